"""Meeting data layer and transcript post-processing.

Provides Pydantic schemas and the meeting state machine, SQLAlchemy models,
MeetingRepository with lease-fenced writes, the enhancement and redaction
stages, and MinutesGenerator.
"""
