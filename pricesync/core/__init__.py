"""Core constants and data types shared across the pipeline."""
