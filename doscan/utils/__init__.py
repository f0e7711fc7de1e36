"""
Core data structures
"""
