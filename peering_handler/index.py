import json
import logging
import time
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError

# Configure logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)

# Statuses a connection passes through before it can be accepted
ACCEPTABLE_STATES = ('pending-acceptance', 'active')
FAILED_STATES = ('failed', 'rejected', 'expired', 'deleted')

# Seconds between status polls, and how many polls before giving up
POLL_DELAY = 5
POLL_ATTEMPTS = 60


def ec2_client(region: str, role_arn: Optional[str] = None, external_id: Optional[str] = None):
    """
    EC2 client for one side of the peering.

    Assumes role_arn first when given, otherwise uses the function's own
    credentials.
    """
    if role_arn:
        assume_args = {
            'RoleArn': role_arn,
            'RoleSessionName': 'vpc-peering-provider',
        }
        if external_id:
            assume_args['ExternalId'] = external_id

        credentials = boto3.client('sts', region_name=region).assume_role(**assume_args)['Credentials']
        logger.info(f"Assumed role: {role_arn}")
        return boto3.client(
            'ec2',
            region_name=region,
            aws_access_key_id=credentials['AccessKeyId'],
            aws_secret_access_key=credentials['SecretAccessKey'],
            aws_session_token=credentials['SessionToken'],
        )

    return boto3.client('ec2', region_name=region)


def _client_for(properties: Dict[str, Any]):
    return ec2_client(
        properties['Region'],
        properties.get('RoleArn'),
        properties.get('ExternalId'),
    )


def _is_true(value: Any) -> bool:
    # CloudFormation hands every property over as a string
    return str(value).lower() == 'true'


def find_main_route_table(client, vpc_id: str) -> str:
    response = client.describe_route_tables(
        Filters=[
            {'Name': 'vpc-id', 'Values': [vpc_id]},
            {'Name': 'association.main', 'Values': ['true']},
        ]
    )
    route_tables = response.get('RouteTables', [])
    if not route_tables:
        raise LookupError(f"No main route table found for VPC {vpc_id}")
    return route_tables[0]['RouteTableId']


def handle_main_route_table(request_type: str, properties: Dict[str, Any],
                            physical_resource_id: Optional[str],
                            old_properties: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    vpc_id = properties['VpcId']
    physical_resource_id = f"main-rtb-{vpc_id}"

    if request_type == 'Delete':
        # Lookup only, nothing to clean up
        return {'PhysicalResourceId': physical_resource_id}

    route_table_id = find_main_route_table(_client_for(properties), vpc_id)
    logger.info(f"Main route table for {vpc_id} in {properties['Region']}: {route_table_id}")

    return {
        'PhysicalResourceId': physical_resource_id,
        'Data': {'RouteTableId': route_table_id},
    }


def peering_status(client, peering_id: str) -> str:
    connections = client.describe_vpc_peering_connections(
        VpcPeeringConnectionIds=[peering_id]
    )['VpcPeeringConnections']
    return connections[0]['Status']['Code'] if connections else 'unknown'


def wait_until_acceptable(client, peering_id: str) -> str:
    """
    Wait for a peering connection to become acceptable on this side.

    A cross-region connection is not visible in the accepter region right
    away and then sits in initiating-request for a while.
    """
    waiter_config = {'Delay': POLL_DELAY, 'MaxAttempts': POLL_ATTEMPTS}
    client.get_waiter('vpc_peering_connection_exists').wait(
        VpcPeeringConnectionIds=[peering_id],
        WaiterConfig=waiter_config,
    )

    for _ in range(POLL_ATTEMPTS):
        status = peering_status(client, peering_id)
        if status in ACCEPTABLE_STATES:
            return status
        if status in FAILED_STATES:
            raise RuntimeError(f"VPC peering connection {peering_id} is {status}, cannot accept")
        logger.info(f"Waiting for {peering_id} to become acceptable (status: {status})")
        time.sleep(POLL_DELAY)

    raise TimeoutError(f"VPC peering connection {peering_id} never became acceptable")


def handle_peering_accepter(request_type: str, properties: Dict[str, Any],
                            physical_resource_id: Optional[str],
                            old_properties: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    peering_id = properties['VpcPeeringConnectionId']

    if request_type == 'Delete':
        # The requester side owns the connection and deletes it
        logger.info(f"Releasing accepter for {peering_id}")
        return {'PhysicalResourceId': physical_resource_id or peering_id}

    client = _client_for(properties)

    status = wait_until_acceptable(client, peering_id)

    if status != 'active' and _is_true(properties.get('AutoAccept', 'true')):
        logger.info(f"Accepting VPC peering connection {peering_id} (status: {status})")
        client.accept_vpc_peering_connection(VpcPeeringConnectionId=peering_id)
        client.get_waiter('vpc_peering_connection_available').wait(
            VpcPeeringConnectionIds=[peering_id],
            WaiterConfig={'Delay': POLL_DELAY, 'MaxAttempts': POLL_ATTEMPTS},
        )
        status = 'active'

    tags = properties.get('Tags', [])
    if tags:
        client.create_tags(Resources=[peering_id], Tags=tags)
        logger.info(f"Tagged {peering_id} with {[tag['Key'] for tag in tags]}")

    if request_type == 'Update' and old_properties:
        # Only prune tags on the connection this resource tagged before
        if old_properties.get('VpcPeeringConnectionId') == peering_id:
            keys = {tag['Key'] for tag in tags}
            removed = sorted({tag['Key'] for tag in old_properties.get('Tags', [])} - keys)
            if removed:
                client.delete_tags(
                    Resources=[peering_id],
                    Tags=[{'Key': key} for key in removed],
                )
                logger.info(f"Removed tags {removed} from {peering_id}")

    return {
        'PhysicalResourceId': peering_id,
        'Data': {'VpcPeeringConnectionId': peering_id, 'Status': status},
    }


def handle_route(request_type: str, properties: Dict[str, Any],
                 physical_resource_id: Optional[str],
                 old_properties: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    route_table_id = properties['RouteTableId']
    destination = properties['DestinationCidrBlock']
    peering_id = properties['VpcPeeringConnectionId']
    route_id = f"{route_table_id}_{destination}"

    client = _client_for(properties)

    if request_type == 'Delete':
        try:
            client.delete_route(RouteTableId=route_table_id, DestinationCidrBlock=destination)
            logger.info(f"Deleted route {route_id}")
        except ClientError as e:
            if e.response['Error']['Code'] != 'InvalidRoute.NotFound':
                raise
            logger.warning(f"Route {route_id} already gone: {str(e)}")
        return {'PhysicalResourceId': physical_resource_id or route_id}

    if request_type == 'Update' and physical_resource_id == route_id:
        # Same table and destination, only the target moved
        client.replace_route(
            RouteTableId=route_table_id,
            DestinationCidrBlock=destination,
            VpcPeeringConnectionId=peering_id,
        )
        logger.info(f"Replaced route {route_id} -> {peering_id}")
    else:
        client.create_route(
            RouteTableId=route_table_id,
            DestinationCidrBlock=destination,
            VpcPeeringConnectionId=peering_id,
        )
        logger.info(f"Created route {route_id} -> {peering_id}")

    return {
        'PhysicalResourceId': route_id,
        'Data': {'RouteTableId': route_table_id},
    }


def _ingress_permission(properties: Dict[str, Any]) -> Dict[str, Any]:
    permission = {
        'IpProtocol': properties.get('IpProtocol', '-1'),
        'FromPort': int(properties.get('FromPort', 0)),
        'ToPort': int(properties.get('ToPort', 65535)),
        'IpRanges': [{'CidrIp': properties['CidrIp']}],
    }
    if properties.get('Description'):
        permission['IpRanges'][0]['Description'] = properties['Description']
    return permission


def handle_ingress_rule(request_type: str, properties: Dict[str, Any],
                        physical_resource_id: Optional[str],
                        old_properties: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    group_id = properties['GroupId']
    rule_id = f"sgrule-{group_id}-{properties['CidrIp']}"

    client = _client_for(properties)

    if request_type == 'Delete':
        try:
            client.revoke_security_group_ingress(
                GroupId=group_id,
                IpPermissions=[_ingress_permission(properties)],
            )
            logger.info(f"Revoked ingress rule {rule_id}")
        except ClientError as e:
            if e.response['Error']['Code'] != 'InvalidPermission.NotFound':
                raise
            logger.warning(f"Ingress rule {rule_id} already gone: {str(e)}")
        return {'PhysicalResourceId': physical_resource_id or rule_id}

    if request_type == 'Update' and physical_resource_id == rule_id:
        old_description = (old_properties or {}).get('Description')
        if properties.get('Description') != old_description:
            client.update_security_group_rule_descriptions_ingress(
                GroupId=group_id,
                IpPermissions=[_ingress_permission(properties)],
            )
            logger.info(f"Updated description of ingress rule {rule_id}")
        else:
            logger.info(f"Ingress rule {rule_id} unchanged")
        return {'PhysicalResourceId': rule_id}

    client.authorize_security_group_ingress(
        GroupId=group_id,
        IpPermissions=[_ingress_permission(properties)],
    )
    logger.info(f"Authorized ingress rule {rule_id}")

    return {'PhysicalResourceId': rule_id}


HANDLERS = {
    'MainRouteTable': handle_main_route_table,
    'PeeringAccepter': handle_peering_accepter,
    'Route': handle_route,
    'IngressRule': handle_ingress_rule,
}


def on_event(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Custom resource provider entry point.

    Returns PhysicalResourceId and Data for the provider framework. Any
    exception marks the CloudFormation operation as failed.
    """
    logger.info(f"Event: {json.dumps(event)}")

    request_type = event['RequestType']
    properties = event.get('ResourceProperties', {})
    kind = properties.get('Kind')

    handler = HANDLERS.get(kind)
    if handler is None:
        raise ValueError(f"Unknown peering resource kind: {kind}")

    return handler(
        request_type,
        properties,
        event.get('PhysicalResourceId'),
        event.get('OldResourceProperties'),
    )
