#!/usr/bin/env python3
"""
Incident Engine - Collaborator Backends
"""

from .memory_store import InMemoryIncidentStore
from .static_directory import StaticDirectory

__all__ = ['InMemoryIncidentStore', 'StaticDirectory']
