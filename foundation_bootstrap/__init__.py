"""
Foundation bootstrap for a multi-account AWS organization.

Creates or adopts member accounts, wires GitHub Actions OIDC trust into each
account, provisions per-environment Terraform state backends, verifies the
result and tears it all down again.
"""

__version__ = "0.1.0"
