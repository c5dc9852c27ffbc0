#!/usr/bin/env python3
"""
Incident Engine - Configuration Management Module
"""

from .config_manager import ConfigManager, ConfigValidationError

__all__ = ['ConfigManager', 'ConfigValidationError']
