#!/usr/bin/env python3
"""
Desired-state descriptor for a VPC peering relationship

Describes the five intents that make up a peering between a "local" and a
"remote" VPC, each reached through its own provider context:

1. PeeringLink     - requested from the local side, naming the remote VPC
2. AccepterRecord  - auto-accepts the link on the remote side
3. RouteIntent     - one per side, peer CIDR -> peering link
4. IngressRule     - one per side, all traffic from the peer CIDR

Nothing here talks to AWS. The stack turns these records into CloudFormation
resources and leaves ordering to CloudFormation.

Usage:
    descriptor = PeeringDescriptor(
        local=NetworkRef(
            vpc_id="vpc-11111111",
            cidr_block="10.0.0.0/16",
            security_group_id="sg-11111111",
            context=ProviderContext(region="us-east-1", account="111111111111"),
        ),
        remote=NetworkRef(
            vpc_id="vpc-22222222",
            cidr_block="10.1.0.0/16",
            security_group_id="sg-22222222",
            context=ProviderContext(region="us-west-2", account="222222222222"),
            name="bursting",
        ),
        tags={"Environment": "prod"},
    )
    link = descriptor.peering_link()
    intents = descriptor.render("pcx-12345678", discover_local, discover_remote)
"""

from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Tuple, Union

LOCAL = "local"
REMOTE = "remote"

DEFAULT_LOCAL_NAME = "default"
DEFAULT_REMOTE_NAME = "bursting"

ALL_PROTOCOLS = "-1"
ALL_PORTS = (0, 65535)

# Tag sets are stored as ordered (key, value) pairs so records stay hashable
Tags = Tuple[Tuple[str, str], ...]


def resolve_route_table(explicit_id: Optional[str], discover: Callable[[], str]) -> str:
    """Use the override if given, else discover the main route table.

    ``discover`` is only called when ``explicit_id`` is empty.
    """
    if explicit_id:
        return explicit_id
    return discover()


def freeze_tags(tags: Union[Mapping[str, str], Tags, None]) -> Tags:
    return tuple(dict(tags or ()).items())


def merge_tags(tags: Union[Mapping[str, str], Tags, None], name: str) -> Tags:
    """User tags plus a fixed Name tag. Name always wins on collision."""
    merged = dict(tags or ())
    merged["Name"] = name
    return tuple(merged.items())


@dataclass(frozen=True)
class ProviderContext:
    """Account/region scope that one side's resources live in."""

    region: str
    account: Optional[str] = None
    # Role assumed for API calls made on this side's behalf
    role_arn: Optional[str] = None
    external_id: Optional[str] = None


@dataclass(frozen=True)
class NetworkRef:
    vpc_id: str
    cidr_block: str
    security_group_id: str
    context: ProviderContext
    main_route_table_id: str = ""
    name: str = DEFAULT_LOCAL_NAME


def peering_display_name(local: NetworkRef, remote: NetworkRef) -> str:
    return f"VPC Peering between {local.name} and {remote.name}"


@dataclass(frozen=True)
class PeeringLink:
    requester_vpc_id: str
    accepter_vpc_id: str
    peer_region: str
    peer_owner_id: Optional[str]
    tags: Tags


@dataclass(frozen=True)
class AccepterRecord:
    link_id: str
    tags: Tags
    auto_accept: bool = True


@dataclass(frozen=True)
class RouteIntent:
    side: str
    route_table_id: str
    destination_cidr_block: str
    link_id: str


@dataclass(frozen=True)
class IngressRule:
    side: str
    security_group_id: str
    source_cidr: str
    direction: str = "ingress"
    protocol: str = ALL_PROTOCOLS
    from_port: int = ALL_PORTS[0]
    to_port: int = ALL_PORTS[1]


@dataclass(frozen=True)
class PeeringIntents:
    link: PeeringLink
    accepter: AccepterRecord
    local_route: RouteIntent
    remote_route: RouteIntent
    local_ingress: IngressRule
    remote_ingress: IngressRule

    @property
    def routes(self):
        return (self.local_route, self.remote_route)

    @property
    def ingress_rules(self):
        return (self.local_ingress, self.remote_ingress)


@dataclass(frozen=True)
class PeeringDescriptor:
    """
    Desired state of one peering relationship.

    Every cross-reference is taken from the peer: the local route and the
    local ingress rule both point at the remote CIDR block and vice versa.
    """

    local: NetworkRef
    remote: NetworkRef
    tags: Tags = ()
    name: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "tags", freeze_tags(self.tags))

    @property
    def display_name(self) -> str:
        return self.name or peering_display_name(self.local, self.remote)

    def peering_link(self) -> PeeringLink:
        """The link requested from the local side."""
        return PeeringLink(
            requester_vpc_id=self.local.vpc_id,
            accepter_vpc_id=self.remote.vpc_id,
            peer_region=self.remote.context.region,
            peer_owner_id=self.remote.context.account,
            tags=merge_tags(self.tags, self.display_name),
        )

    def render(
        self,
        link_id: str,
        discover_local: Callable[[], str],
        discover_remote: Callable[[], str],
    ) -> PeeringIntents:
        """
        Render all intents for a link id assigned by the provisioning engine.

        Args:
            link_id: Peering connection id (or a token standing in for it)
            discover_local: Returns the local VPC's main route table id; only
                called when the local side has no explicit route table
            discover_remote: Same for the remote side
        """
        local, remote = self.local, self.remote

        return PeeringIntents(
            link=self.peering_link(),
            accepter=AccepterRecord(
                link_id=link_id,
                tags=merge_tags(self.tags, self.display_name),
            ),
            local_route=RouteIntent(
                side=LOCAL,
                route_table_id=resolve_route_table(local.main_route_table_id, discover_local),
                destination_cidr_block=remote.cidr_block,
                link_id=link_id,
            ),
            remote_route=RouteIntent(
                side=REMOTE,
                route_table_id=resolve_route_table(remote.main_route_table_id, discover_remote),
                destination_cidr_block=local.cidr_block,
                link_id=link_id,
            ),
            local_ingress=IngressRule(
                side=LOCAL,
                security_group_id=local.security_group_id,
                source_cidr=remote.cidr_block,
            ),
            remote_ingress=IngressRule(
                side=REMOTE,
                security_group_id=remote.security_group_id,
                source_cidr=local.cidr_block,
            ),
        )
