"""Document workflow engine: agent chains, step graphs and business-rule comparison."""

__version__ = "1.0.0"
