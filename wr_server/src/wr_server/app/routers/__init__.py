from __future__ import annotations

"""
HTTP routers: templates, workspaces and agent callbacks.
"""
