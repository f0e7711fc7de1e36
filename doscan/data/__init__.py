"""
Loading and converting phenotypes, genotype probabilities and maps
"""
