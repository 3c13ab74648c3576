"""
Core AWS lookups and policy document output for iam-policy-fetch.
"""

import json
import os
import shutil
import subprocess
import sys
from collections import namedtuple
from datetime import datetime
from pathlib import Path
from urllib.parse import unquote

import boto3
from botocore.exceptions import BotoCoreError, ClientError

DEFAULT_AWS_CMD = "aws"
DEFAULT_OUTPUT_DIR = "policies"
BACKENDS = ("cli", "boto3")

Identity = namedtuple("Identity", ["account_id", "arn", "user_id"])
ManagedPolicy = namedtuple("ManagedPolicy", ["name", "arn", "default_version_id"])


class PolicyFetchError(Exception):
    """Base error; the CLI exits with ``exit_code`` after printing the message."""

    exit_code = 1


class CliMissingError(PolicyFetchError):
    exit_code = 1


class InvalidCredentialsError(PolicyFetchError):
    exit_code = 2


class PolicyNotFoundError(PolicyFetchError):
    exit_code = 4


class VersionLookupError(PolicyFetchError):
    exit_code = 5


class FetchError(PolicyFetchError):
    exit_code = 6


class WriteError(PolicyFetchError):
    exit_code = 8


class InvalidSelectionError(PolicyFetchError):
    exit_code = 7


class AwsCallError(Exception):
    """A single AWS call failed. Callers translate it into a PolicyFetchError."""


def log(message):
    """Print a timestamped message to stderr, keeping stdout clean."""
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    print(f"[{timestamp}] {message}", file=sys.stderr)


def get_aws_cmd():
    """Get the AWS CLI binary, honouring the AWS_CMD override."""
    return os.environ.get("AWS_CMD") or DEFAULT_AWS_CMD


def user_name_from_arn(arn):
    """
    Extract the trailing name from an IAM ARN.

    Examples:
        arn:aws:iam::123456789012:user/alice → alice
        arn:aws:iam::123456789012:user/team/bob → bob
    """
    return arn.rsplit("/", 1)[-1]


def is_customer_managed(policy_arn):
    """AWS-managed policies live under the reserved 'aws' account."""
    return ":iam::aws:policy/" not in policy_arn


def decode_policy_document(document):
    """
    Normalise a policy document returned by IAM.

    IAM returns documents URL-encoded; boto3 and the AWS CLI usually decode
    them already, but a raw string is still handled here.
    """
    if isinstance(document, str):
        try:
            return json.loads(unquote(document))
        except ValueError as e:
            raise AwsCallError(f"Policy document is not valid JSON: {e}")
    return document


def format_size(num_bytes):
    """Human-readable file size from a byte count (e.g. 512B, 1.4K, 2.0M)."""
    size = float(num_bytes)
    for unit in ("B", "K", "M", "G"):
        if size < 1024 or unit == "G":
            if unit == "B":
                return f"{int(size)}B"
            return f"{size:.1f}{unit}"
        size /= 1024


def _client_error_message(e):
    error_code = e.response.get("Error", {}).get("Code")
    error_msg = e.response.get("Error", {}).get("Message", str(e))
    if error_code:
        return f"{error_code}: {error_msg}"
    return error_msg


class AwsCliClient:
    """Runs IAM/STS calls through the AWS command-line tool."""

    def __init__(self, aws_cmd=DEFAULT_AWS_CMD, profile=None):
        self.aws_cmd = aws_cmd
        self.profile = profile

    def check_available(self):
        if shutil.which(self.aws_cmd) is None:
            raise CliMissingError(
                f"AWS CLI not found in PATH ({self.aws_cmd}). "
                "Install AWS CLI v2 from https://aws.amazon.com/cli/"
            )

    def _run(self, *args):
        """
        Run one AWS CLI command and parse its JSON output.

        Args:
            *args: Service, operation and operation arguments

        Returns:
            Parsed JSON response

        Raises:
            AwsCallError: If the command fails or prints something other than JSON
        """
        cmd = [self.aws_cmd, *args, "--output", "json"]
        if self.profile:
            cmd.extend(["--profile", self.profile])

        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise AwsCallError(f"Could not run {self.aws_cmd}: {e}")

        if result.returncode != 0:
            details = result.stderr.strip() or f"exit status {result.returncode}"
            raise AwsCallError(details)

        try:
            return json.loads(result.stdout)
        except ValueError:
            raise AwsCallError(f"Invalid JSON response from '{' '.join(args[:2])}'")

    @staticmethod
    def _field(response, *keys):
        value = response
        try:
            for key in keys:
                value = value[key]
        except (KeyError, TypeError, IndexError):
            raise AwsCallError(f"Unexpected AWS CLI response: missing {'.'.join(keys)}")
        return value

    def get_caller_identity(self):
        return self._run("sts", "get-caller-identity")

    def list_attached_user_policies(self, user_name):
        response = self._run("iam", "list-attached-user-policies", "--user-name", user_name)
        return self._field(response, "AttachedPolicies")

    def list_local_policies(self):
        # The CLI follows pagination markers on its own
        response = self._run("iam", "list-policies", "--scope", "Local")
        return self._field(response, "Policies")

    def get_policy(self, policy_arn):
        response = self._run("iam", "get-policy", "--policy-arn", policy_arn)
        return self._field(response, "Policy")

    def get_policy_version(self, policy_arn, version_id):
        response = self._run(
            "iam",
            "get-policy-version",
            "--policy-arn",
            policy_arn,
            "--version-id",
            version_id,
        )
        return decode_policy_document(self._field(response, "PolicyVersion", "Document"))


class Boto3Client:
    """Runs IAM/STS calls through a boto3 session."""

    def __init__(self, profile=None):
        self.profile = profile
        self._session = None
        self._clients = {}

    @property
    def session(self):
        if self._session is None:
            if self.profile:
                self._session = boto3.Session(profile_name=self.profile)
            else:
                self._session = boto3.Session()
        return self._session

    def _client(self, service):
        if service not in self._clients:
            self._clients[service] = self.session.client(service)
        return self._clients[service]

    def check_available(self):
        try:
            self.session
        except BotoCoreError as e:
            raise InvalidCredentialsError(f"Cannot create AWS session: {e}")

    def get_caller_identity(self):
        try:
            response = self._client("sts").get_caller_identity()
        except ClientError as e:
            raise AwsCallError(_client_error_message(e))
        except BotoCoreError as e:
            raise AwsCallError(f"AWS connection failed: {e}")
        response.pop("ResponseMetadata", None)
        return response

    def _paginate(self, operation, result_key, **kwargs):
        items = []
        try:
            paginator = self._client("iam").get_paginator(operation)
            for page in paginator.paginate(**kwargs):
                items.extend(page.get(result_key, []))
        except ClientError as e:
            raise AwsCallError(_client_error_message(e))
        except BotoCoreError as e:
            raise AwsCallError(f"AWS connection failed: {e}")
        return items

    def list_attached_user_policies(self, user_name):
        return self._paginate("list_attached_user_policies", "AttachedPolicies", UserName=user_name)

    def list_local_policies(self):
        return self._paginate("list_policies", "Policies", Scope="Local")

    def get_policy(self, policy_arn):
        try:
            return self._client("iam").get_policy(PolicyArn=policy_arn)["Policy"]
        except ClientError as e:
            raise AwsCallError(_client_error_message(e))
        except BotoCoreError as e:
            raise AwsCallError(f"AWS connection failed: {e}")

    def get_policy_version(self, policy_arn, version_id):
        try:
            response = self._client("iam").get_policy_version(
                PolicyArn=policy_arn, VersionId=version_id
            )
        except ClientError as e:
            raise AwsCallError(_client_error_message(e))
        except BotoCoreError as e:
            raise AwsCallError(f"AWS connection failed: {e}")
        return decode_policy_document(response["PolicyVersion"]["Document"])


def create_client(backend="cli", profile=None, aws_cmd=None):
    """
    Build the AWS backend used for every call in a run.

    Args:
        backend: "cli" to shell out to the AWS CLI, "boto3" to use the SDK
        profile: Optional AWS profile name
        aws_cmd: AWS CLI binary (cli backend only); defaults to AWS_CMD or "aws"

    Returns:
        AwsCliClient or Boto3Client
    """
    if backend == "cli":
        return AwsCliClient(aws_cmd or get_aws_cmd(), profile=profile)
    if backend == "boto3":
        return Boto3Client(profile=profile)
    raise ValueError(f"Unknown backend '{backend}' (expected one of: {', '.join(BACKENDS)})")


def check_prerequisites(client):
    """Fail with CliMissingError (or a session error for boto3) before any AWS call."""
    client.check_available()


def validate_credentials(client):
    """
    Validate AWS credentials using STS GetCallerIdentity.

    Args:
        client: AWS backend

    Returns:
        Identity of the caller

    Raises:
        InvalidCredentialsError: If the call fails or the response lacks Arn/Account
    """
    log("Validating AWS credentials...")

    try:
        response = client.get_caller_identity()
    except AwsCallError as e:
        raise InvalidCredentialsError(
            f"Invalid or expired AWS credentials. Run 'aws configure' to set up credentials. ({e})"
        )

    if not isinstance(response, dict):
        raise InvalidCredentialsError("Invalid JSON response from AWS STS. Check your AWS CLI configuration.")

    arn = response.get("Arn")
    account_id = response.get("Account")
    if not arn or not account_id:
        raise InvalidCredentialsError("Failed to extract user information from AWS STS response.")

    log("Credentials are valid.")
    log(f"Account: {account_id}")
    log(f"User ARN: {arn}")
    print(file=sys.stderr)

    return Identity(account_id=account_id, arn=arn, user_id=response.get("UserId", ""))


def get_attached_policies(client, user_name):
    """
    List names of customer-managed policies attached to an IAM user.

    Listing failures (e.g. role credentials, missing iam:ListAttachedUserPolicies)
    degrade to an empty list.
    """
    log(f"Fetching policies attached to user '{user_name}'...")

    try:
        attached = client.list_attached_user_policies(user_name)
    except AwsCallError as e:
        log(f"Warning: Could not list attached policies ({e}). Returning empty list.")
        return []

    return [
        policy["PolicyName"]
        for policy in attached
        if is_customer_managed(policy.get("PolicyArn", ""))
    ]


def get_customer_policies(client):
    """
    List all customer-managed (Scope=Local) policies in the account.

    Returns:
        list of ManagedPolicy

    Raises:
        PolicyNotFoundError: If the listing itself fails
    """
    log("Fetching customer-managed policies...")

    try:
        policies = client.list_local_policies()
    except AwsCallError as e:
        raise PolicyNotFoundError(
            f"Failed to list customer-managed policies. Check IAM permissions. ({e})"
        )

    return [
        ManagedPolicy(
            name=policy["PolicyName"],
            arn=policy["Arn"],
            default_version_id=policy.get("DefaultVersionId", ""),
        )
        for policy in policies
    ]


def choose_policy(names, selection):
    """
    Pick a policy from a displayed list by 1-based number or exact name.

    Args:
        names: Policy names in display order
        selection: User input

    Returns:
        str: The chosen policy name

    Raises:
        InvalidSelectionError: Out-of-range number or unknown name
    """
    selection = selection.strip()

    if selection.isascii() and selection.isdigit():
        index = int(selection)
        if 1 <= index <= len(names):
            return names[index - 1]

    # Exact, case-sensitive name match
    if selection in names:
        return selection

    raise InvalidSelectionError("Invalid selection. Enter a valid number or policy name.")


def lookup_policy(client, policy_name):
    """
    Resolve a customer-managed policy name to its ARN and default version.

    The default version is read from GetPolicy, which is authoritative.

    Raises:
        PolicyNotFoundError: No customer-managed policy has that name
        VersionLookupError: The default version cannot be determined
    """
    log(f"Looking up policy '{policy_name}' in customer-managed policies...")

    policies = get_customer_policies(client)
    matches = [policy for policy in policies if policy.name == policy_name]

    if not matches:
        log(f"Policy '{policy_name}' not found. Available policies:")
        for policy in policies:
            print(f"  {policy.name}", file=sys.stderr)
        raise PolicyNotFoundError(
            f"Policy '{policy_name}' was not found in customer-managed policies."
        )

    policy = matches[0]

    try:
        details = client.get_policy(policy.arn)
    except AwsCallError as e:
        raise VersionLookupError(
            f"Could not determine DefaultVersionId for policy '{policy_name}'. ({e})"
        )

    version_id = (details.get("DefaultVersionId") or "").strip()
    if not version_id:
        raise VersionLookupError(f"Could not determine DefaultVersionId for policy '{policy_name}'.")

    log(f"Found policy ARN: {policy.arn}")
    log(f"Default policy version: {version_id}")
    print(file=sys.stderr)

    return policy._replace(default_version_id=version_id)


def fetch_document(client, policy):
    """
    Download the default version document of a policy.

    Returns:
        The policy document as parsed JSON

    Raises:
        FetchError: If the download fails or the document is empty
    """
    log(f"Downloading policy document '{policy.name}' ({policy.default_version_id})...")

    try:
        document = client.get_policy_version(policy.arn, policy.default_version_id)
    except AwsCallError as e:
        raise FetchError(f"Failed to download policy document from AWS IAM. ({e})")

    if document is None:
        raise FetchError("Downloaded policy is not valid JSON.")

    return document


def output_path(output_dir, policy_name):
    return Path(output_dir) / f"{policy_name}.json"


def ensure_output_dir(output_dir):
    """Create the output directory and its parents."""
    try:
        Path(output_dir).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise WriteError(f"Cannot create output directory '{output_dir}': {e}")


def _discard(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def write_output(document, output_dir, policy_name, confirm_overwrite):
    """
    Write a policy document to ``<output_dir>/<policy_name>.json``.

    The document goes to a hidden ``.part`` sibling first and is moved into
    place once fully written, so an existing file is never left truncated.

    Args:
        document: Parsed policy document
        output_dir: Directory to write into (created if missing)
        policy_name: Policy name, used as the file stem
        confirm_overwrite: Callable taking a question and returning True to overwrite

    Returns:
        Path of the written file, or None if the user declined to overwrite

    Raises:
        WriteError: If the directory or file cannot be written
    """
    ensure_output_dir(output_dir)
    target = output_path(output_dir, policy_name)

    if target.exists():
        log(f"File already exists: {target}")
        if not confirm_overwrite("Do you want to overwrite it?"):
            log("Download cancelled. Existing file preserved.")
            return None
        log("Overwriting existing file...")

    log(f"Writing policy document to: {target}")

    payload = json.dumps(document, indent=4, ensure_ascii=False) + "\n"
    partial = target.with_name(f".{target.name}.part")

    try:
        fd = os.open(partial, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(partial, target)
    except OSError as e:
        _discard(partial)
        raise WriteError(f"Failed to write policy document to {target}: {e}")
    except BaseException:
        # Interrupted mid-write
        _discard(partial)
        raise

    return target
