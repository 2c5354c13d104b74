"""
scopewatch - namespace provisioning and push-event listener

Creates a namespace through the policy API and keeps a resilient push
subscription open on it, printing the policy events it receives.
"""

__version__ = "0.1.0"
