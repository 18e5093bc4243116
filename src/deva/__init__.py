"""deva: launch AI coding agents inside persistent, workspace-bound containers."""

__version__ = "0.8.0"
