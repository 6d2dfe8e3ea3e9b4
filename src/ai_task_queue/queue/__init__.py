"""Durable AI task queue with per-provider rate limiting and crash recovery.

Why not Celery / Dramatiq / RQ?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard parts here are not message delivery but the task record itself:
the prompt and provider are persisted so a restarted process can resume
work, progress must stay monotone for observers, and admission is gated by
per-(tenant, provider) request and token budgets that change at runtime.
A broker would still need all of that as custom logic around it.

One process owns one dispatcher. Every status change is a compare-and-set
on the SQLite row, so even a second dispatcher pointed at the same file
cannot double-dispatch a task.
"""
