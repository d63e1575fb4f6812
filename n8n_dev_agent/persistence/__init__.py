"""Durable artifacts owned by the agent: the day-partitioned JSONL error log.

Public surface:
    JsonlErrorLog -- fire-and-forget append, per-day read-back.
"""

from n8n_dev_agent.persistence.error_log import JsonlErrorLog

__all__ = ["JsonlErrorLog"]
