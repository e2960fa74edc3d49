"""
A Kubernetes operator that decrypts SOPS-encrypted `SopsSecret` resources into regular `Secret`s.
"""

__version__ = "0.1.0"
