"""fittrack command-line interface."""
