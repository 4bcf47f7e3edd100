"""
Domain services: ingestion, pipeline, assignment and activity tracking.
"""
