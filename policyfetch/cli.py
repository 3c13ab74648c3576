"""
Command-line interface for iam-policy-fetch.
"""

import argparse
import os
import sys

from . import __version__
from .core import (
    BACKENDS,
    DEFAULT_OUTPUT_DIR,
    InvalidSelectionError,
    PolicyFetchError,
    PolicyNotFoundError,
    check_prerequisites,
    choose_policy,
    create_client,
    ensure_output_dir,
    fetch_document,
    format_size,
    get_attached_policies,
    get_aws_cmd,
    get_customer_policies,
    log,
    lookup_policy,
    user_name_from_arn,
    validate_credentials,
    write_output,
)


def read_line(prompt):
    """
    Prompt on stderr and read one line from stdin.

    Returns:
        str: The stripped line, or None on EOF
    """
    print(prompt, end="", file=sys.stderr, flush=True)
    line = sys.stdin.readline()
    if not line:
        print(file=sys.stderr)
        return None
    return line.strip()


def prompt_yes_no(question):
    """Ask once; only y/yes (any case) counts as yes. EOF counts as no."""
    answer = read_line(f"{question} (y/n): ")
    if answer is None:
        log("EOF detected - cannot prompt for user input.")
        return False
    return answer.lower() in ("y", "yes")


def print_policy_menu(names):
    for i, name in enumerate(names, start=1):
        print(f"{i:2d}. {name}", file=sys.stderr)
    print(file=sys.stderr)


def select_from_account(client):
    """Show every customer-managed policy in the account and read a choice."""
    names = [policy.name for policy in get_customer_policies(client)]
    if not names:
        raise PolicyNotFoundError("No customer-managed policies found in this account.")

    log(f"Found {len(names)} customer-managed policies:")
    print_policy_menu(names)

    answer = read_line("Enter policy number or name to download: ")
    if not answer:
        raise InvalidSelectionError("No selection provided.")
    return choose_policy(names, answer)


def select_policy_interactive(client, user_name):
    """
    Interactive policy selection.

    Policies attached to the user are offered first; pressing Enter falls
    through to the full list of customer-managed policies in the account.
    """
    attached = get_attached_policies(client, user_name)

    if not attached:
        log(f"No customer-managed policies attached to user '{user_name}'.")
        log("Checking for customer-managed policies in the account...")
        return select_from_account(client)

    log(f"Policies attached to user '{user_name}':")
    print_policy_menu(attached)

    answer = read_line(
        "Enter policy number or name to download (or press Enter to list all customer-managed): "
    )
    if not answer:
        return select_from_account(client)
    return choose_policy(attached, answer)


def resolve_policy(client, identity, policy_name=None):
    """Turn the optional name argument (or an interactive choice) into a ManagedPolicy."""
    if not policy_name:
        policy_name = select_policy_interactive(client, user_name_from_arn(identity.arn))

    print(file=sys.stderr)
    log(f"Selected policy: {policy_name}")

    return lookup_policy(client, policy_name)


def report_success(path):
    print(file=sys.stderr)
    log("Policy document saved successfully!")
    log(f"Location: {path}")
    log(f"Size: {format_size(path.stat().st_size)}")
    print(file=sys.stderr)
    log(f"You can inspect it with: cat '{path}' | jq .")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="iam-policy-fetch",
        description="Download AWS IAM customer-managed policy documents to local JSON files",
        epilog="Examples:\n"
        "  iam-policy-fetch                             # Pick a policy interactively\n"
        "  iam-policy-fetch lab_policy                  # Save policies/lab_policy.json\n"
        "  iam-policy-fetch lab_policy ./out            # Save ./out/lab_policy.json\n"
        "  AWS_CMD=/opt/aws/bin/aws iam-policy-fetch    # Use a specific AWS CLI binary\n"
        "\n"
        "Exit codes: 0=success or overwrite declined, 1=AWS CLI missing, 2=invalid credentials,\n"
        "            4=policy not found, 5=version lookup failed, 6=download failed,\n"
        "            7=invalid selection, 8=write failed",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "policy_name",
        nargs="?",
        default=None,
        help="Customer-managed policy to download. If omitted, choose from a list "
        "(policies attached to your IAM user first, Enter for all customer-managed policies)",
    )
    parser.add_argument(
        "output_dir",
        nargs="?",
        default=DEFAULT_OUTPUT_DIR,
        help=f"Directory for the JSON file, created if missing (default: {DEFAULT_OUTPUT_DIR})",
    )
    parser.add_argument(
        "--profile",
        default=None,
        help="AWS profile to use (defaults to the AWS_PROFILE env var, then the default credential chain)",
    )
    parser.add_argument(
        "--backend",
        choices=BACKENDS,
        default="cli",
        help="How to reach AWS: 'cli' runs the AWS CLI (AWS_CMD env var overrides the binary), "
        "'boto3' calls the SDK directly (default: cli)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    return parser


def main(argv=None):
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    profile = args.profile or os.environ.get("AWS_PROFILE")

    try:
        client = create_client(args.backend, profile=profile, aws_cmd=get_aws_cmd())
        check_prerequisites(client)
        identity = validate_credentials(client)

        ensure_output_dir(args.output_dir)

        policy = resolve_policy(client, identity, args.policy_name)
        document = fetch_document(client, policy)
        path = write_output(document, args.output_dir, policy.name, prompt_yes_no)
    except PolicyFetchError as e:
        log(f"ERROR: {e}")
        return e.exit_code
    except KeyboardInterrupt:
        print(file=sys.stderr)
        log("Interrupted.")
        return 130

    if path is not None:
        report_success(path)

    return 0


if __name__ == "__main__":
    sys.exit(main())
