"""memarchive: durable, file-backed project memory with consolidation and retrieval."""

__version__ = "0.1.0"

from memarchive.config import Config
from memarchive.memory_vault import MemoryVault
from memarchive.oracle import ExtractionOracle, JsonFileOracle, ScriptedOracle
from memarchive.session.archive import ArchiveResult, SessionState

__all__ = [
    "__version__",
    "ArchiveResult",
    "Config",
    "ExtractionOracle",
    "JsonFileOracle",
    "MemoryVault",
    "ScriptedOracle",
    "SessionState",
]
