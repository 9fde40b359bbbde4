"""Power Platform VNet integration tooling: environments, enterprise policies and ordered teardown."""

__version__ = "1.0.0"

__all__ = ["__version__"]
