"""
TeamGuard

Team access control core for a 2FA credential manager: role-based access
control, team policy enforcement, shared vault authorization and identity
provisioning.
"""

__version__ = "1.0.0"
