#!/usr/bin/env python3
"""
Start/Stop EC2 Instances - Lambda Version
Serverless function that starts every stopped instance (or stops every running
instance) in all regions of the account, tagging each one with a run marker.
Intended to be wired to scheduled events: stop at the end of the business day,
start again the next morning.
"""

import json
import boto3
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from botocore.exceptions import BotoCoreError, ClientError
from typing import List, Dict, Optional, Any
import logging
import datetime

# Configure logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)

DEFAULT_TAG_KEY = 'NodeAWSEC2StartStop'

# Action -> lifecycle state an instance must be in to be acted upon
ACTION_TARGET_STATES = {
    'START': 'stopped',
    'STOP': 'running',
}

ACCESS_DENIED_CODES = ['UnauthorizedOperation', 'AccessDenied', 'AuthFailure']

def get_target_state(action: str) -> str:
    """Map an action to the lifecycle state instances must currently be in."""
    if action not in ACTION_TARGET_STATES:
        raise ValueError(f"Invalid action: {action}. Must be 'START' or 'STOP'")
    return ACTION_TARGET_STATES[action]

def make_tag_value() -> str:
    """Current time in milliseconds since the epoch, as a string."""
    return str(int(time.time() * 1000))

def get_all_regions(ec2_client) -> List[str]:
    """Get all regions enabled for the account."""
    response = ec2_client.describe_regions()
    return [region['RegionName'] for region in response['Regions']]

def get_instances_in_state(ec2_client, state: str) -> List[str]:
    """Get ids of all instances whose current state matches `state`."""
    instance_ids = []
    paginator = ec2_client.get_paginator('describe_instances')

    # Filtering is done locally, the request itself asks for every instance
    for page in paginator.paginate():
        for reservation in page['Reservations']:
            for instance in reservation['Instances']:
                if instance['State']['Name'] == state:
                    instance_ids.append(instance['InstanceId'])

    return instance_ids

def log_audit_trail(operation: str, details: Dict) -> None:
    """Log audit trail for every mutating call."""
    try:
        timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
        audit_entry = {
            'timestamp': timestamp,
            'operation': operation,
            'details': details
        }
        logger.info(f"AUDIT: {json.dumps(audit_entry)}")
    except (TypeError, ValueError) as e:
        logger.warning(f"Could not write audit log: {e}")

def tag_instances(ec2_client, region: str, instance_ids: List[str], tag_key: str,
                  tag_value: str, dry_run: bool = False) -> Dict:
    """Apply the marker tag to all instances in a single request."""
    result = {
        'operation': 'tag',
        'instance_ids': instance_ids,
        'status': 'skipped',
        'error': None
    }

    if dry_run:
        logger.info(f"DRY RUN: Would tag {len(instance_ids)} instances in {region} with {tag_key}={tag_value}")
        return result

    try:
        ec2_client.create_tags(
            Resources=instance_ids,
            Tags=[{'Key': tag_key, 'Value': tag_value}]
        )
        result['status'] = 'success'
        logger.info(f"Tagged {len(instance_ids)} instances in {region} with {tag_key}={tag_value}")
        log_audit_trail('create_tags', {
            'region': region,
            'instance_ids': instance_ids,
            'tag': {tag_key: tag_value}
        })
    except ClientError as e:
        result['status'] = 'failed'
        result['error'] = e.response['Error']['Message']
        logger.error(f"ERROR creating tags in {region}: {result['error']}")

    return result

def change_instance_state(ec2_client, region: str, instance_ids: List[str], action: str,
                          dry_run: bool = False) -> Dict:
    """Issue a start or stop command for the instances without waiting for completion."""
    result = {
        'operation': action.lower(),
        'instance_ids': instance_ids,
        'status': 'skipped',
        'transitions': [],
        'error': None
    }

    if dry_run:
        logger.info(f"DRY RUN: Would {action.lower()} {len(instance_ids)} instances in {region}")
        return result

    try:
        if action == 'START':
            response = ec2_client.start_instances(InstanceIds=instance_ids)
            changes = response.get('StartingInstances', [])
        else:
            response = ec2_client.stop_instances(InstanceIds=instance_ids)
            changes = response.get('StoppingInstances', [])

        for change in changes:
            transition = {
                'InstanceId': change['InstanceId'],
                'PreviousState': change['PreviousState']['Name'],
                'CurrentState': change['CurrentState']['Name']
            }
            result['transitions'].append(transition)
            logger.info(f"  {transition['InstanceId']}: {transition['PreviousState']} -> {transition['CurrentState']}")

        result['status'] = 'success'
        log_audit_trail(f"{action.lower()}_instances", {
            'region': region,
            'instance_ids': instance_ids
        })
    except ClientError as e:
        verb = 'starting' if action == 'START' else 'stopping'
        result['status'] = 'failed'
        result['error'] = e.response['Error']['Message']
        logger.error(f"ERROR {verb} instances in {region}: {result['error']}")

    return result

def process_region(region: str, action: str, target_state: str, tag_key: str, tag_value: str,
                   dry_run: bool = False, session=None) -> Dict:
    """Discover matching instances in a region, then tag them and change their state."""
    region_result = {
        'region': region,
        'instances': [],
        'tag_result': None,
        'state_result': None,
        'errors': []
    }

    logger.info(f"Processing region {region}...")

    if session:
        ec2_client = session.client('ec2', region_name=region)
    else:
        ec2_client = boto3.client('ec2', region_name=region)

    try:
        instance_ids = get_instances_in_state(ec2_client, target_state)
    except ClientError as e:
        error_code = e.response['Error']['Code']
        if error_code in ACCESS_DENIED_CODES:
            logger.warning(f"Access denied for region {region} - skipping")
        else:
            logger.error(f"Unable to discover instances in {region}: {e.response['Error']['Message']}")
        region_result['errors'].append(f"Instance discovery failed: {e.response['Error']['Message']}")
        return region_result

    if not instance_ids:
        logger.info(f"No valid instances found for region {region}")
        return region_result

    region_result['instances'] = instance_ids
    logger.info(f"Region '{region}' Instances: {json.dumps(instance_ids, indent=2)}")

    # Tagging and the state change are independent: a failure of one never
    # prevents the other from being attempted
    tag_result = tag_instances(ec2_client, region, instance_ids, tag_key, tag_value, dry_run)
    state_result = change_instance_state(ec2_client, region, instance_ids, action, dry_run)

    region_result['tag_result'] = tag_result
    region_result['state_result'] = state_result
    for call_result in (tag_result, state_result):
        if call_result['status'] == 'failed':
            region_result['errors'].append(f"{call_result['operation']} failed: {call_result['error']}")

    return region_result

def start_stop_instances(action: str, tag_key: str = DEFAULT_TAG_KEY, max_workers: int = 10,
                         dry_run: bool = False, regions: Optional[List[str]] = None,
                         session=None) -> Dict:
    """
    Perform `action` on matching instances in every region of the account.

    Raises ValueError for an unknown action and lets region discovery errors
    propagate. Failures inside a region are recorded in that region's result.
    Returns only once every region has been processed.
    """
    target_state = get_target_state(action)
    tag_value = make_tag_value()

    if not regions:
        if session:
            ec2_client = session.client('ec2')
        else:
            ec2_client = boto3.client('ec2')
        regions = get_all_regions(ec2_client)

    run_result = {
        'action': action,
        'target_state': target_state,
        'tag': {'Key': tag_key, 'Value': tag_value},
        'region_results': [],
        'summary': {}
    }

    if not regions:
        logger.info("No regions to process")
        run_result['summary'] = calculate_summary_stats([])
        logger.info("Done")
        return run_result

    max_workers = max(1, min(max_workers, len(regions)))
    logger.info(f"{action}: looking for '{target_state}' instances in {len(regions)} regions "
                f"using {max_workers} parallel workers")

    results = []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_region = {
            executor.submit(process_region, region, action, target_state, tag_key, tag_value, dry_run, session): region
            for region in regions
        }

        for future in as_completed(future_to_region):
            region = future_to_region[future]
            try:
                results.append(future.result())
            except Exception as e:
                logger.error(f"Error processing region {region}: {e}")
                results.append({
                    'region': region,
                    'instances': [],
                    'tag_result': None,
                    'state_result': None,
                    'errors': [f"Processing error: {str(e)}"]
                })

    run_result['region_results'] = sorted(results, key=lambda r: r['region'])
    run_result['summary'] = calculate_summary_stats(results)
    logger.info("Done")
    return run_result

def calculate_summary_stats(results: List[Dict]) -> Dict:
    """Calculate summary statistics for a run."""
    def succeeded(call_result):
        return call_result is not None and call_result['status'] == 'success'

    return {
        'total_regions_processed': len(results),
        'total_instances_matched': sum(len(r['instances']) for r in results),
        'total_instances_tagged': sum(len(r['instances']) for r in results if succeeded(r['tag_result'])),
        'total_instances_changed': sum(len(r['instances']) for r in results if succeeded(r['state_result'])),
        'regions_with_errors': len([r for r in results if r['errors']]),
        'total_errors': sum(len(r['errors']) for r in results)
    }

def parse_bool(value: Any) -> bool:
    """Booleans from the event may arrive as strings such as "false"."""
    if isinstance(value, str):
        return value.strip().lower() == 'true'
    return bool(value)

def parse_regions(value: Any) -> List[str]:
    """Accept a list of regions or a comma-separated string."""
    if not value:
        return []
    if isinstance(value, str):
        return [r.strip() for r in value.split(',') if r.strip()]
    return [str(r).strip() for r in value if str(r).strip()]

def get_execution_parameters(event: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Read run settings from the event params, then the environment."""
    params = (event or {}).get('params', {}) or {}

    return {
        'tag_key': params.get('tag_key', os.environ.get('TAG_KEY', DEFAULT_TAG_KEY)),
        'max_workers': int(params.get('max_workers', os.environ.get('MAX_WORKERS', '10'))),
        'dry_run': parse_bool(params.get('dry_run', os.environ.get('DRY_RUN', 'false'))),
        'regions': parse_regions(params.get('regions', os.environ.get('REGIONS', '')))
    }

def get_caller_identity() -> Dict[str, str]:
    """Validate credentials, returning the account and caller ARN."""
    sts_client = boto3.client('sts')
    response = sts_client.get_caller_identity()
    return {
        'account_id': response.get('Account', 'Unknown'),
        'caller_arn': response.get('Arn', 'Unknown')
    }

def run_action(action: str, event: Optional[Dict[str, Any]], context) -> Dict[str, Any]:
    """Run an action and wrap the outcome in a Lambda response."""
    execution_id = getattr(context, 'aws_request_id', None)

    try:
        get_target_state(action)
    except ValueError as e:
        logger.error(str(e))
        return {
            'statusCode': 400,
            'body': {
                'error': str(e),
                'message': 'Invalid action',
                'executionId': execution_id
            }
        }

    # Validate credentials
    try:
        identity = get_caller_identity()
        logger.info(f"Operating on EC2 instances in AWS Account: {identity['account_id']}")
    except (ClientError, BotoCoreError) as e:
        logger.error(f"Failed to validate credentials: {e}")
        return {
            'statusCode': 500,
            'body': {
                'error': f"Invalid AWS credentials: {e}",
                'message': f'{action} instances failed',
                'executionId': execution_id
            }
        }

    try:
        params = get_execution_parameters(event)
        logger.info(f"Configuration - Action: {action}, Tag key: {params['tag_key']}, "
                    f"Max workers: {params['max_workers']}, Dry run: {params['dry_run']}, "
                    f"Regions: {params['regions'] or 'all'}")

        results = start_stop_instances(action, **params)
        summary = results['summary']

        mode = "DRY RUN" if params['dry_run'] else "EXECUTION"
        logger.info(f"{mode} completed. "
                    f"Regions processed: {summary['total_regions_processed']}, "
                    f"Instances matched: {summary['total_instances_matched']}, "
                    f"Instances changed: {summary['total_instances_changed']}, "
                    f"Errors: {summary['total_errors']}")

        if summary['total_errors'] > 0:
            logger.warning(f"{summary['regions_with_errors']} regions reported errors")

        return {
            'statusCode': 200,
            'body': {
                'message': f'{action} instances completed',
                'results': results,
                'accountId': identity['account_id'],
                'callerArn': identity['caller_arn'],
                'executionId': execution_id
            }
        }

    except ClientError as e:
        logger.error(f"Unable to discover regions: {e.response['Error']['Message']}")
        return {
            'statusCode': 500,
            'body': {
                'error': e.response['Error']['Message'],
                'message': f'{action} instances failed',
                'executionId': execution_id
            }
        }
    except Exception as e:
        logger.error(f"{action} instances failed: {str(e)}")
        return {
            'statusCode': 500,
            'body': {
                'error': str(e),
                'message': f'{action} instances failed',
                'executionId': execution_id
            }
        }

def start_instances(event: Dict[str, Any], context) -> Dict[str, Any]:
    """Start all stopped instances in every region."""
    return run_action('START', event, context)

def stop_instances(event: Dict[str, Any], context) -> Dict[str, Any]:
    """Stop all running instances in every region."""
    return run_action('STOP', event, context)

def lambda_handler(event: Dict[str, Any], context) -> Dict[str, Any]:
    """
    AWS Lambda handler taking the action from the event

    Args:
        event: Lambda event object, {"action": "start"|"stop", "params": {...}}
        context: Lambda context object

    Returns:
        Dict with execution results
    """
    action = str((event or {}).get('action', '')).upper()
    return run_action(action, event, context)
