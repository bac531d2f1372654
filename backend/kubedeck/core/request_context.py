"""
Request-scoped context variables.

Lets log records carry the request id without threading it through the core.
"""

from __future__ import annotations

from contextvars import ContextVar
from typing import Optional


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
cluster_id_var: ContextVar[Optional[str]] = ContextVar("cluster_id", default=None)
