"""
Data loaders for nerve masks and single-cell tables.
"""
