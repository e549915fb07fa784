"""
Pytest configuration for unit tests
"""

import pytest

from stacksignal.config import PipelineConfig, RetrySettings, WorkerSettings


@pytest.fixture
def fast_config(test_db_path) -> PipelineConfig:
    """Config with every delay zeroed so worker tests never sleep"""
    return PipelineConfig(
        database_path=test_db_path,
        retry=RetrySettings(max_retries=3, base_delay_seconds=0.0, max_delay_seconds=0.0),
        worker=WorkerSettings(
            batch_size=10,
            inter_call_delay_seconds=0.0,
            idle_min_seconds=0.01,
            idle_max_seconds=0.01,
            freshness_days=90,
            cache_refresh_seconds=300,
        ),
    )
