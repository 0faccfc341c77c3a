"""
Shared API dependencies
"""

from typing import Optional

from ..system import VaultSystem


# Global vault system instance, built on first use
vault_system: Optional[VaultSystem] = None


def get_vault_system() -> VaultSystem:
    global vault_system
    if vault_system is None:
        vault_system = VaultSystem()
    return vault_system
