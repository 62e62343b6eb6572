"""Bulk research runner: bounded, self-continuing dispatch of per-company tasks.

Why not Celery / Dramatiq / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
A job is a handful of companies researched by one slow inference call each.
What needs care is not queuing but ownership: overlapping trigger calls,
crashed cycles and retried tasks must never double-count progress or send
a second completion notification. All of that is expressed as conditional
``UPDATE`` statements against the job/task tables:

- ``pending -> running`` claims guarded on the prior status.
- Terminal and requeue writes guarded on the attempt that was claimed.
- Progress recomputed from task rows instead of incremented.
- Completion set once, and only its winner notifies.

Each trigger processes at most a few tasks and then schedules its own
continuation, so no process has to stay alive for the whole job.
"""
