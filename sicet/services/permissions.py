"""
Role capability table.

Route guards resolve resource access through :func:`can_access`.
"""
from typing import Dict, FrozenSet

ROLES = ("admin", "referrer", "operator")
ACTIONS = ("read", "write", "delete")

_RW = frozenset({"read", "write"})
_RWD = frozenset({"read", "write", "delete"})
_R = frozenset({"read"})

CAPABILITIES: Dict[str, Dict[str, FrozenSet[str]]] = {
    "referrer": {
        "devices": _RWD,
        "kpis": _RWD,
        "todolists": _RWD,
        "tasks": _RWD,
        "reports": _R,
        "exports": _R,
        "dashboard": _R,
        "alerts": _R,
    },
    "operator": {
        "devices": _R,
        "kpis": _R,
        "todolists": _R,
        "tasks": _RW,
    },
}


def can_access(role: str, resource: str, action: str) -> bool:
    if role == "admin":
        return True
    return action in CAPABILITIES.get(role, {}).get(resource, frozenset())
