"""
Live Chat Routing Platform
==========================

Core modules for the live-chat support platform.

This package provides the conversation routing infrastructure including:
- Agent directory and availability states
- Routing strategies and precedence rules
- Per-tenant waiting queues with position and wait-time tracking
- Assignment, transfer and release of conversations
"""

__version__ = "1.0.0"
