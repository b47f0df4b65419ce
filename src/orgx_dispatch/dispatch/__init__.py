"""Codex dispatch job for one OrgX initiative.

Builds a deterministic task queue, runs one codex process per task attempt
with bounded concurrency and retry backoff, and reports task status plus
milestone/workstream rollups back to OrgX. The job state is a JSON snapshot
rewritten after every transition; there is no resume.
"""
