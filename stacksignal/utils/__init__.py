"""Pipeline utilities: normalization, retry, dedup, skip-cache, verdict parsing"""
