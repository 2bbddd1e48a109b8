from memarchive.memory_vault.vault import MemoryVault

__all__ = ["MemoryVault"]
