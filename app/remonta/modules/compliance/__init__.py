"""
Worker compliance wizard: requirement catalogue, document uploads and admin review.
"""
