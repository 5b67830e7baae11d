"""
Core engine package
Memory store, profile evolver, reference resolver and privacy gate
"""

from .engine import MemoryEngine
from .memory_store import MemoryStore
from .profile_evolver import ProfileEvolver
from .reference_resolver import ReferenceResolver
from .privacy_gate import PrivacyGate

__all__ = [
    'MemoryEngine',
    'MemoryStore',
    'ProfileEvolver',
    'ReferenceResolver',
    'PrivacyGate'
]
