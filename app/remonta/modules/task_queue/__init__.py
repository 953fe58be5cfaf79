"""
Database-backed background job queue (registration processing and similar deferred work).
"""
