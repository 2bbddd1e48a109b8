"""Extraction oracle contract and deterministic stand-ins."""

from memarchive.oracle.base import ExtractionOracle, JsonFileOracle, ScriptedOracle

__all__ = ["ExtractionOracle", "JsonFileOracle", "ScriptedOracle"]
