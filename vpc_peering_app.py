#!/usr/bin/env python3
"""
CDK App for VPC Peering between a local and a remote VPC

Scenario:
- Local account (111111111111): owns the requester VPC, runs VpcPeeringStack
- Remote account (222222222222): owns the accepter VPC

Usage:
    # Same account, two regions
    cdk deploy VpcPeeringStack \\
        --context localVpcId=vpc-11111111 --context remoteVpcId=vpc-22222222 \\
        --context localCidrBlock=10.0.0.0/16 --context remoteCidrBlock=10.1.0.0/16 \\
        --context localSecurityGroupId=sg-11111111 --context remoteSecurityGroupId=sg-22222222 \\
        --context localRegion=us-east-1 --context remoteRegion=us-west-2

    # Cross-account: also deploy the accepter role in the remote account
    cdk deploy --all --context deployAccepterRole=true \\
        --context localAccount=111111111111 --context remoteAccount=222222222222 ...

    # Tags on the command line are a JSON object
    cdk synth --context tags='{"Environment": "prod"}' ...
"""

import json
import logging

from aws_cdk import App, Environment

from peering_accepter_role_stack import DEFAULT_ROLE_NAME, PeeringAccepterRoleStack
from vpc_peering_intents import (
    DEFAULT_LOCAL_NAME,
    DEFAULT_REMOTE_NAME,
    NetworkRef,
    PeeringDescriptor,
    ProviderContext,
)
from vpc_peering_stack import VpcPeeringStack

logger = logging.getLogger(__name__)

REQUIRED_CONTEXT = [
    "localVpcId",
    "remoteVpcId",
    "localCidrBlock",
    "remoteCidrBlock",
    "localSecurityGroupId",
    "remoteSecurityGroupId",
    "localRegion",
    "remoteRegion",
]


class ConfigurationError(ValueError):
    """Raised when the CDK context does not describe a usable peering."""


def _is_true(value) -> bool:
    # --context values always arrive as strings
    return str(value).lower() in ("true", "1", "yes")


def parse_tags(value) -> dict:
    if not value:
        return {}
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"tags must be a JSON object: {e}") from e
    if not isinstance(value, dict):
        raise ConfigurationError(f"tags must be a mapping, got {type(value).__name__}")
    return {str(key): str(val) for key, val in value.items()}


def accepter_role_arn(account: str, role_name: str = DEFAULT_ROLE_NAME) -> str:
    return f"arn:aws:iam::{account}:role/{role_name}"


def load_descriptor(app: App) -> PeeringDescriptor:
    """Build the peering descriptor from CDK context"""
    get = app.node.try_get_context

    missing = [key for key in REQUIRED_CONTEXT if not get(key)]
    if missing:
        raise ConfigurationError(f"Missing required context values: {', '.join(missing)}")

    remote_account = get("remoteAccount")
    remote_role_arn = get("remoteRoleArn")
    if not remote_role_arn and _is_true(get("deployAccepterRole")):
        if not remote_account:
            raise ConfigurationError("deployAccepterRole requires remoteAccount")
        remote_role_arn = accepter_role_arn(remote_account)

    local = NetworkRef(
        vpc_id=get("localVpcId"),
        cidr_block=get("localCidrBlock"),
        security_group_id=get("localSecurityGroupId"),
        main_route_table_id=get("localMainRouteTableId") or "",
        context=ProviderContext(
            region=get("localRegion"),
            account=get("localAccount"),
        ),
        name=get("localName") or DEFAULT_LOCAL_NAME,
    )
    remote = NetworkRef(
        vpc_id=get("remoteVpcId"),
        cidr_block=get("remoteCidrBlock"),
        security_group_id=get("remoteSecurityGroupId"),
        main_route_table_id=get("remoteMainRouteTableId") or "",
        context=ProviderContext(
            region=get("remoteRegion"),
            account=remote_account,
            role_arn=remote_role_arn,
            external_id=get("remoteExternalId"),
        ),
        name=get("remoteName") or DEFAULT_REMOTE_NAME,
    )

    return PeeringDescriptor(
        local=local,
        remote=remote,
        tags=parse_tags(get("tags")),
        name=get("peeringName"),
    )


def build_app(app: App) -> VpcPeeringStack:
    """Add the peering stacks to app and return the local stack"""
    descriptor = load_descriptor(app)
    local_context = descriptor.local.context
    remote_context = descriptor.remote.context

    logger.info(
        f"Peering {descriptor.local.vpc_id} ({local_context.region}) with "
        f"{descriptor.remote.vpc_id} ({remote_context.region}): {descriptor.display_name}"
    )
    for side in (descriptor.local, descriptor.remote):
        if side.main_route_table_id:
            logger.debug(f"{side.name}: using route table {side.main_route_table_id}")
        else:
            logger.debug(f"{side.name}: main route table of {side.vpc_id} looked up at deploy time")

    peering_stack = VpcPeeringStack(
        app,
        app.node.try_get_context("stackName") or "VpcPeeringStack",
        descriptor=descriptor,
        description=descriptor.display_name,
        env=Environment(account=local_context.account, region=local_context.region),
    )

    if _is_true(app.node.try_get_context("deployAccepterRole")):
        if not local_context.account:
            raise ConfigurationError("deployAccepterRole requires localAccount")

        role_stack = PeeringAccepterRoleStack(
            app,
            "VpcPeeringAccepterRoleStack",
            requester_account_id=local_context.account,
            external_id=remote_context.external_id,
            env=Environment(account=remote_context.account, region=remote_context.region),
        )
        # The role has to exist before the handler can assume it
        peering_stack.add_dependency(role_stack)
        logger.info(f"Accepter role stack in {remote_context.account}: {remote_context.role_arn}")

    return peering_stack


def main():
    """Main application entry point"""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    app = App()
    build_app(app)
    app.synth()


if __name__ == "__main__":
    main()
