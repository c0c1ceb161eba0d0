"""
IAM service.

Account registration, bearer tokens, role hierarchy and verification codes,
served as a FastAPI application (see iam_service.main).
"""
