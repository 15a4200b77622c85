"""qagate command-line interface."""
