"""
System-design scaling simulator package.

Modules:
- state: nodes, packets, run statistics and the topology registry
- des_simulator: logical clock with one-shot and repeating timers
- router: transit, capacity admission control and terminal outcomes
- policy: one routing policy per node kind
- levels: level and economy configuration loaded from YAML
- driver: command surface (start/pause/resume/add/upgrade/reset)
- reporting: end-of-run metrics and CSV export
- pump: realtime thread advancing the logical clock
- api: REST API surface for commands, snapshots and events
"""
