"""
modelflow: resampling-based model tuning and clinical mock-study reporting

A small, reproducible workflow for tabular data: split, preprocess with
recipes, specify a model, tune it over a space-filling grid with v-fold or
bootstrap resampling, and evaluate the finalized fit on held-out data.
Also ships the descriptive tables and figures used for the mock clinical
study reports.
"""

__version__ = "0.3.0"

# Explicit classification threshold used throughout the pipeline
CLASSIFICATION_THRESHOLD = 0.5

__all__ = [
    "__version__",
    "CLASSIFICATION_THRESHOLD",
]
