"""GitHub Deployer: install, update and roll back GitHub repositories as
WordPress plugins and themes."""

__version__ = "0.4.0"
