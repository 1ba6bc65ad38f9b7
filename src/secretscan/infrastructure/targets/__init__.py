"""Scan target adapters."""

from .virtual_machine import VirtualMachineProvider, VirtualMachineTarget

__all__ = [
    "VirtualMachineProvider",
    "VirtualMachineTarget",
]
