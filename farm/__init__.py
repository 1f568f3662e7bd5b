"""
Capacity-aware operation scheduler.

Modules:
- state: node, target and operation snapshots
- model: forward and inverse effect functions per operation kind
- ledger: in-flight operations and projected target state
- packing: greedy spreading of a thread requirement over workers
- scheduler: the projected-state batch scheduler
- stages: naive and projected stages plus the controller choosing between them
- host: simulated and Kubernetes environments the scheduler acts on
- api: REST surface for health, ledger and manual ticks
"""
