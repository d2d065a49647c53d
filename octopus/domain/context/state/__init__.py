# State = the live run record: step statuses, memory and log as the orchestrator sees them now.

# Readers (API handlers, WebSocket streams) only ever get snapshots.

# One execution per run at a time: the repository hands out a lock per run id.
