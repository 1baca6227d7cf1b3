"""
Processing stages of the nerve hotspot pipeline.
"""
