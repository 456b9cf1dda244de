"""
WhatIfInvested Provisioning - stack wiring and declarative export.
"""
from .settings import EdgeEnvironment, EdgeSettings
from .stack import CHARGE_UNIT, PROXY_UNIT, BackendStack, StackOutputs, build_backend_stack

__all__ = [
    "EdgeEnvironment",
    "EdgeSettings",
    "CHARGE_UNIT",
    "PROXY_UNIT",
    "BackendStack",
    "StackOutputs",
    "build_backend_stack",
]
