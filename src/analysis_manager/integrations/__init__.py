"""
Tool integrations: strategy objects that adapt one external program to the run state machine.

Concrete integrations are looked up by name through ``registry``.
"""

from .base import InputKind, Integration, RequiredInput, UnitVocabulary

__all__ = ["InputKind", "Integration", "RequiredInput", "UnitVocabulary"]
