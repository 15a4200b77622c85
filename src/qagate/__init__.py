"""qagate — test execution and result aggregation for multi-tool QA suites."""

__version__ = "0.1.0"
