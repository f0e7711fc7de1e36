"""
Kinship matrices
"""
