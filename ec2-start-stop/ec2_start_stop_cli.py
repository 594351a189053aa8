#!/usr/bin/env python3
"""
Start all stopped EC2 instances, or stop all running ones, across every region.

Each instance acted upon is tagged with a marker whose value is the time of the
run, so a later look at the tags tells which run last touched it. Always run
with --dry-run first to review what would change.
"""

import boto3
import time
import argparse
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError, ProfileNotFound
from typing import List, Dict, Optional

DEFAULT_TAG_KEY = 'NodeAWSEC2StartStop'

ACTION_TARGET_STATES = {
    'START': 'stopped',
    'STOP': 'running',
}

def validate_aws_credentials(session=None):
    """Validate AWS credentials before proceeding."""
    try:
        if session:
            sts = session.client('sts')
        else:
            sts = boto3.client('sts')

        response = sts.get_caller_identity()
        print(f"Using AWS Account: {response.get('Account', 'Unknown')}")
        print(f"User/Role: {response.get('Arn', 'Unknown')}")
        return True
    except (NoCredentialsError, PartialCredentialsError) as e:
        print(f"Error: AWS credentials not found or incomplete: {e}")
        print("Please configure your credentials using 'aws configure' or environment variables.")
        return False
    except ClientError as e:
        print(f"Error validating credentials: {e.response['Error']['Message']}")
        return False

def get_client(service: str, region: Optional[str] = None, session=None):
    """Create a client from the session if one was given, else from the default chain."""
    kwargs = {'region_name': region} if region else {}
    if session:
        return session.client(service, **kwargs)
    return boto3.client(service, **kwargs)

def get_all_regions(ec2_client) -> List[str]:
    """Get all regions enabled for the account."""
    response = ec2_client.describe_regions()
    return [region['RegionName'] for region in response['Regions']]

def get_instances_in_state(ec2_client, state: str) -> List[str]:
    """Get ids of all instances in the given state, with pagination."""
    instance_ids = []
    paginator = ec2_client.get_paginator('describe_instances')

    for page in paginator.paginate():
        for reservation in page['Reservations']:
            for instance in reservation['Instances']:
                if instance['State']['Name'] == state:
                    instance_ids.append(instance['InstanceId'])

    return instance_ids

def tag_instances(ec2_client, instance_ids: List[str], tag_key: str, tag_value: str) -> Optional[str]:
    """Tag the instances in one request. Returns an error message on failure."""
    try:
        ec2_client.create_tags(
            Resources=instance_ids,
            Tags=[{'Key': tag_key, 'Value': tag_value}]
        )
        return None
    except ClientError as e:
        return e.response['Error']['Message']

def change_instance_state(ec2_client, instance_ids: List[str], action: str) -> Dict:
    """Send the start or stop command. Returns transitions or an error message."""
    try:
        if action == 'START':
            response = ec2_client.start_instances(InstanceIds=instance_ids)
            changes = response.get('StartingInstances', [])
        else:
            response = ec2_client.stop_instances(InstanceIds=instance_ids)
            changes = response.get('StoppingInstances', [])

        transitions = [
            (change['InstanceId'], change['PreviousState']['Name'], change['CurrentState']['Name'])
            for change in changes
        ]
        return {'transitions': transitions, 'error': None}
    except ClientError as e:
        return {'transitions': [], 'error': e.response['Error']['Message']}

def process_region(region: str, action: str, tag_key: str, tag_value: str,
                   dry_run: bool, session=None) -> Dict:
    """Find matching instances in a region and act on them."""
    target_state = ACTION_TARGET_STATES[action]
    result = {
        'region': region,
        'instances': [],
        'tagged': False,
        'transitions': [],
        'errors': [],
        'access_denied': False
    }

    ec2_client = get_client('ec2', region, session)

    try:
        result['instances'] = get_instances_in_state(ec2_client, target_state)
    except ClientError as e:
        if e.response['Error']['Code'] in ['UnauthorizedOperation', 'AccessDenied', 'AuthFailure']:
            result['access_denied'] = True
        result['errors'].append(f"Unable to discover instances: {e.response['Error']['Message']}")
        return result

    if not result['instances'] or dry_run:
        return result

    tag_error = tag_instances(ec2_client, result['instances'], tag_key, tag_value)
    if tag_error:
        result['errors'].append(f"ERROR creating tags: {tag_error}")
    else:
        result['tagged'] = True

    # Attempted even when tagging failed
    state_change = change_instance_state(ec2_client, result['instances'], action)
    result['transitions'] = state_change['transitions']
    if state_change['error']:
        verb = 'starting' if action == 'START' else 'stopping'
        result['errors'].append(f"ERROR {verb} instances: {state_change['error']}")

    return result

def print_region_result(result: Dict, action: str, dry_run: bool):
    """Print what happened in one region."""
    region = result['region']
    target_state = ACTION_TARGET_STATES[action]

    print(f"\n{'='*60}")
    print(f"REGION: {region}")
    print(f"{'='*60}")

    if result['access_denied']:
        print(f"No permission to access region {region}, skipping...")
        return

    if not result['instances'] and not result['errors']:
        print(f"No {target_state} instances found in this region.")
        return

    if result['instances']:
        print(f"Found {len(result['instances'])} {target_state} instances:")
        for instance_id in result['instances']:
            print(f"  {instance_id}")

    if dry_run and result['instances']:
        print(f"DRY RUN: Would tag and {action.lower()} these instances")

    if result['tagged']:
        print("Tags applied successfully!")

    for instance_id, previous_state, current_state in result['transitions']:
        print(f"  {instance_id}: {previous_state} -> {current_state}")

    for error in result['errors']:
        print(f"Error: {error}")

def confirm_action(action: str, region_count: int) -> bool:
    """Interactive confirmation before changing instance state."""
    target_state = ACTION_TARGET_STATES[action]

    print(f"\n{'='*60}")
    print(f"INSTANCE {action} CONFIRMATION")
    print(f"{'='*60}")
    print(f"Every {target_state} instance in {region_count} region(s) will be {'started' if action == 'START' else 'stopped'}.")
    if action == 'STOP':
        print("WARNING: Stopping instances will terminate running processes!")
    print(f"{'='*60}")

    while True:
        response = input(f"\nType '{action}' to confirm, or 'CANCEL' to abort: ").strip()
        if response == action:
            return True
        elif response == 'CANCEL':
            return False
        else:
            print(f"Please type exactly '{action}' or 'CANCEL'")

def main():
    parser = argparse.ArgumentParser(
        description="Start all stopped or stop all running EC2 instances across regions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
EXAMPLES:
  # Show what would be stopped in every region
  ./ec2_start_stop_cli.py stop --dry-run

  # Start every stopped instance in one region
  ./ec2_start_stop_cli.py start --region eu-west-1

  # Stop everything without confirmation, using a named profile
  ./ec2_start_stop_cli.py stop --profile development --force

  # Use a custom marker tag
  ./ec2_start_stop_cli.py start --tag-key LastScheduledStart
"""
    )
    parser.add_argument('action', type=str.upper, choices=['START', 'STOP'],
                       help='start stopped instances or stop running ones')
    parser.add_argument('--region', help='Only process this region (default: all regions)')
    parser.add_argument('--profile', help='AWS profile to use')
    parser.add_argument('--tag-key', default=DEFAULT_TAG_KEY,
                       help=f'Marker tag key (default: {DEFAULT_TAG_KEY})')
    parser.add_argument('--max-workers', type=int, default=10,
                       help='Regions processed in parallel (default: 10)')
    parser.add_argument('--dry-run', action='store_true',
                       help='Show matching instances without tagging or changing them')
    parser.add_argument('--force', action='store_true',
                       help='Skip interactive confirmation (not recommended)')

    args = parser.parse_args()

    if args.max_workers < 1:
        print("Error: --max-workers must be at least 1")
        sys.exit(1)

    # Create AWS session with profile if specified
    session = None
    if args.profile:
        try:
            session = boto3.Session(profile_name=args.profile)
            print(f"Using AWS profile: {args.profile}")
        except ProfileNotFound:
            print(f"Error: AWS profile '{args.profile}' not found.")
            print("Available profiles can be listed with: aws configure list-profiles")
            sys.exit(1)

    # Validate credentials
    if not validate_aws_credentials(session):
        sys.exit(1)

    try:
        if args.region:
            regions = [args.region]
        else:
            regions = get_all_regions(get_client('ec2', session=session))
    except ClientError as e:
        if e.response['Error']['Code'] == 'UnauthorizedOperation':
            print("Error: Insufficient permissions. Required permissions:")
            print("- ec2:DescribeRegions")
            print("- ec2:DescribeInstances")
            print("- ec2:CreateTags")
            print("- ec2:StartInstances")
            print("- ec2:StopInstances")
        else:
            print(f"Error discovering regions: {e.response['Error']['Message']}")
        sys.exit(1)

    if not regions:
        print("No regions to process.")
        return

    target_state = ACTION_TARGET_STATES[args.action]
    print(f"Action: {args.action} ({target_state} instances)")
    print(f"Regions: {len(regions)}")
    print(f"Marker tag: {args.tag_key}")
    print(f"Mode: {'DRY RUN' if args.dry_run else 'LIVE OPERATION'}")
    print("=" * 50)

    if not args.dry_run and not args.force:
        if not confirm_action(args.action, len(regions)):
            print("Operation cancelled by user.")
            return

    tag_value = str(int(time.time() * 1000))
    max_workers = min(args.max_workers, len(regions))
    results = []

    try:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_region = {
                executor.submit(process_region, region, args.action, args.tag_key, tag_value,
                                args.dry_run, session): region
                for region in regions
            }

            for future in as_completed(future_to_region):
                region = future_to_region[future]
                try:
                    results.append(future.result())
                except Exception as e:
                    results.append({
                        'region': region,
                        'instances': [],
                        'tagged': False,
                        'transitions': [],
                        'errors': [f"Processing error: {e}"],
                        'access_denied': False
                    })
    except KeyboardInterrupt:
        print("\nOperation cancelled by user.")
        sys.exit(1)

    results.sort(key=lambda r: r['region'])
    for result in results:
        print_region_result(result, args.action, args.dry_run)

    total_matched = sum(len(r['instances']) for r in results)
    total_changed = sum(len(r['transitions']) for r in results)
    regions_with_errors = [r['region'] for r in results if r['errors']]

    print(f"\n{'='*60}")
    print("OPERATION COMPLETE" if not args.dry_run else "DRY RUN COMPLETE")
    print(f"{'='*60}")
    print(f"Regions processed: {len(results)}")
    print(f"Matching instances: {total_matched}")
    if args.dry_run:
        print("DRY RUN: No instances were tagged or changed.")
        print("Remove --dry-run flag to perform the operation.")
    else:
        print(f"Instances changed: {total_changed}")
        print(f"Marker tag: {args.tag_key}={tag_value}")
        print("Note: Instances may take a few minutes to finish changing state.")
    if regions_with_errors:
        print(f"Regions with errors: {', '.join(regions_with_errors)}")

if __name__ == "__main__":
    main()
