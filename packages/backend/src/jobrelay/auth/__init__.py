"""Authentication — delegated credential checks for session connects."""
