"""Classification service clients"""
