"""
Plots and report rendering
"""
