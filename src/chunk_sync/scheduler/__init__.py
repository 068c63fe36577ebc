"""Chunked synchronization scheduler.

A large sync request is split at intake into chunks with fixed, contiguous offset
ranges over the *filtered* collection. Stateless workers each claim one chunk,
process it and report the outcome; coordination lives entirely in the database.

Lifecycle of a chunk::

    pending -> processing -> completed
                          -> pending    (retryable failure, after a backoff delay)
                          -> failed     (non-retryable or out of attempts)

The reaper returns chunks whose worker vanished from ``processing`` to ``pending``.
The parent job becomes ``completed`` or ``partial_failure`` exactly once, in the same
transaction as the completion that made its last chunk terminal.
"""
