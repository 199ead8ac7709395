"""Terminal dashboard for EC2 instances and Lambda functions across AWS profiles."""

__version__ = "0.1.0"
