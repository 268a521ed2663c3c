"""Entry point for ``python -m github_deployer``."""

from github_deployer.main import run

if __name__ == "__main__":
    run()
