"""Anchor services: rule generation, pf control and the lifecycle controller."""

from limawan.services.anchor_store import AnchorStore
from limawan.services.lifecycle import AnchorLifecycle
from limawan.services.pfctl import PfctlEngine
from limawan.services.rules import ForwardingSpec, ServiceKind, generate_ruleset
from limawan.services.status import AnchorStatus, StatusInspector

__all__ = [
    "AnchorStore",
    "AnchorLifecycle",
    "PfctlEngine",
    "ForwardingSpec",
    "ServiceKind",
    "generate_ruleset",
    "AnchorStatus",
    "StatusInspector",
]
