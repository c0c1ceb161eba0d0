"""
Identity and access management for the IAM service.

This package provides:
- Password hashing and token issuance
- Role hierarchy authorization
- Email, SMS and password-reset verification codes
- The account lifecycle and the per-request auth pipeline
"""
