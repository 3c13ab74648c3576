"""
iam-policy-fetch: Download AWS IAM customer-managed policy documents.

A Python CLI utility that validates AWS credentials, resolves a
customer-managed IAM policy (by name or by interactive selection), fetches
its default version document, and writes it to a local JSON file.

Key features:
- Interactive selection, attached policies first
- AWS CLI or boto3 backend
- Overwrite confirmation for existing files
- Distinct exit codes per failure
"""

__version__ = "0.1.0"
__license__ = "MIT"

from .core import (
    AwsCliClient,
    Boto3Client,
    Identity,
    ManagedPolicy,
    PolicyFetchError,
    check_prerequisites,
    choose_policy,
    create_client,
    fetch_document,
    get_attached_policies,
    get_customer_policies,
    lookup_policy,
    validate_credentials,
    write_output,
)

__all__ = [
    # Data types
    "Identity",
    "ManagedPolicy",
    # Errors
    "PolicyFetchError",
    # Backends
    "create_client",
    "AwsCliClient",
    "Boto3Client",
    # Operations, in run order
    "check_prerequisites",
    "validate_credentials",
    "get_attached_policies",
    "get_customer_policies",
    "choose_policy",
    "lookup_policy",
    "fetch_document",
    "write_output",
]
