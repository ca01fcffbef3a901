"""
Linker - knowledge point identity and local/cloud reconciliation core.

Knowledge points are tracked mistakes with their corrected form. They can
be created on-device before sign-in and are promoted to the backend once a
token is available.
"""

__version__ = "1.0.0"
