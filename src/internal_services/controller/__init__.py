"""Internal request reconciliation.

Each reconcile trigger runs a fixed list of idempotent steps against one
request snapshot. A step either lets the next one run or ends the invocation
with stop, requeue or error. Terminal statuses are never overwritten, so
duplicated or reordered triggers are harmless.
"""
