"""
Core package: immutable data models, the pipeline error taxonomy, and
JSON Schema validation for extraction responses.
"""
