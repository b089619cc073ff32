"""Task execution for embedding workflows.

- ``executor``: ``AsyncCaller``, a bounded-concurrency executor that retries
  transient failures with exponential backoff.
"""
