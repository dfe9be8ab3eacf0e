"""Storage, notification and resumable upload services used by the pipeline."""
