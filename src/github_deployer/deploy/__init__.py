"""Deployment orchestration and per-target locking."""

from github_deployer.deploy.locks import TargetLocks
from github_deployer.deploy.orchestrator import Deployer, remediation_message

__all__ = ["Deployer", "TargetLocks", "remediation_message"]
