"""
Backend Scripts Module

Available scripts:
    - seed_data.py: Creates system definitions and a sample employee hierarchy
    - validate_workflow.py: Validates a stored or JSON-file definition

Usage:
    python -m scripts.seed_data
"""
