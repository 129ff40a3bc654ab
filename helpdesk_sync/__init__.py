"""Helpdesk Sync - realtime ticket and conversation synchronization"""
__version__ = "1.0.0"
