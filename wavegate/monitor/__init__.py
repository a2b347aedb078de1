"""wavegate Progress Tracker: a projection over the Run Ledger.

The tracker never computes truth; it displays it.  Every snapshot
re-reads the ledger.

Modules
-------
projection
    ``ProgressTracker`` reads the ledger and produces ``ProgressSnapshot``
    models, a frozen point-in-time view of a plan.
renderer
    ``ProgressRenderer`` turns ``ProgressSnapshot`` into Rich renderables,
    including continuous ``Rich.Live`` mode.
"""
