"""strata: dependency-ordered apply and destroy of typed cloud resources."""

__version__ = "0.1.0"
