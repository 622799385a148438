"""Cross-account VPC peering orchestrator for CloudFormation custom resources."""

__version__ = "0.1.0"
