"""Task broker, store and sequential step worker.

A producer dispatches a ``TaskSpec`` through the ``TaskBroker``; workers claim
open tasks, run every step against the ``ActionRegistry`` in order, stream log
lines into the task event log, and finish with exactly one completion event.
"""
