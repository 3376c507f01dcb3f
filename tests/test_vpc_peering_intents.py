"""Tests for the peering descriptor and its rendered intents."""

import dataclasses

import pytest

from vpc_peering_intents import (
    LOCAL,
    REMOTE,
    NetworkRef,
    PeeringDescriptor,
    ProviderContext,
    merge_tags,
    peering_display_name,
    resolve_route_table,
)

LOCAL_CIDR = "10.0.0.0/16"
REMOTE_CIDR = "10.20.0.0/16"
LINK_ID = "pcx-0123456789abcdef0"


def make_descriptor(local_rtb="", remote_rtb="", tags=None, name=None):
    return PeeringDescriptor(
        local=NetworkRef(
            vpc_id="vpc-11111111",
            cidr_block=LOCAL_CIDR,
            security_group_id="sg-11111111",
            main_route_table_id=local_rtb,
            context=ProviderContext(region="us-east-1", account="111111111111"),
        ),
        remote=NetworkRef(
            vpc_id="vpc-22222222",
            cidr_block=REMOTE_CIDR,
            security_group_id="sg-22222222",
            main_route_table_id=remote_rtb,
            context=ProviderContext(region="us-west-2", account="222222222222"),
            name="bursting",
        ),
        tags=tags or {},
        name=name,
    )


class Discovery:
    """Records which VPC main route tables were looked up."""

    def __init__(self):
        self.calls = []

    def for_side(self, side, route_table_id):
        def discover():
            self.calls.append(side)
            return route_table_id

        return discover


@pytest.fixture
def discovery():
    return Discovery()


def render(descriptor, discovery):
    return descriptor.render(
        LINK_ID,
        discovery.for_side(LOCAL, "rtb-local-main"),
        discovery.for_side(REMOTE, "rtb-remote-main"),
    )


class TestResolveRouteTable:
    def test_override_wins(self):
        def discover():
            raise AssertionError("discovery must not run when an override is given")

        assert resolve_route_table("rtb-aaaaaaaa", discover) == "rtb-aaaaaaaa"

    @pytest.mark.parametrize("explicit", ["", None])
    def test_empty_override_discovers(self, explicit):
        assert resolve_route_table(explicit, lambda: "rtb-main") == "rtb-main"


class TestMergeTags:
    def test_name_added_to_user_tags(self):
        merged = merge_tags({"Environment": "prod"}, "VPC Peering between default and bursting")
        assert dict(merged) == {
            "Environment": "prod",
            "Name": "VPC Peering between default and bursting",
        }

    def test_name_wins_on_collision(self):
        merged = merge_tags({"Name": "mine", "Team": "net"}, "fixed")
        assert dict(merged) == {"Name": "fixed", "Team": "net"}

    def test_user_tags_not_mutated(self):
        tags = {"Environment": "prod"}
        merge_tags(tags, "fixed")
        assert tags == {"Environment": "prod"}

    def test_no_user_tags(self):
        assert dict(merge_tags(None, "fixed")) == {"Name": "fixed"}

    def test_result_is_read_only(self):
        merged = merge_tags({}, "fixed")
        with pytest.raises(TypeError):
            merged["Name"] = "other"


class TestPeerSwap:
    """Every cross-reference points at the peer, never the owner."""

    def test_route_destinations(self, discovery):
        intents = render(make_descriptor(), discovery)
        assert intents.local_route.destination_cidr_block == REMOTE_CIDR
        assert intents.remote_route.destination_cidr_block == LOCAL_CIDR

    def test_ingress_sources(self, discovery):
        intents = render(make_descriptor(), discovery)
        assert intents.local_ingress.source_cidr == REMOTE_CIDR
        assert intents.remote_ingress.source_cidr == LOCAL_CIDR

    def test_ingress_targets_own_security_group(self, discovery):
        intents = render(make_descriptor(), discovery)
        assert intents.local_ingress.security_group_id == "sg-11111111"
        assert intents.remote_ingress.security_group_id == "sg-22222222"

    def test_sides_labelled(self, discovery):
        intents = render(make_descriptor(), discovery)
        assert [route.side for route in intents.routes] == [LOCAL, REMOTE]
        assert [rule.side for rule in intents.ingress_rules] == [LOCAL, REMOTE]


class TestLinkReferences:
    def test_accepter_and_routes_share_link(self, discovery):
        intents = render(make_descriptor(), discovery)
        assert intents.accepter.link_id == LINK_ID
        assert intents.local_route.link_id == intents.accepter.link_id
        assert intents.remote_route.link_id == intents.accepter.link_id

    def test_accepter_auto_accepts(self, discovery):
        assert render(make_descriptor(), discovery).accepter.auto_accept is True

    def test_link_requested_from_local_side(self):
        link = make_descriptor().peering_link()
        assert link.requester_vpc_id == "vpc-11111111"
        assert link.accepter_vpc_id == "vpc-22222222"
        assert link.peer_region == "us-west-2"
        assert link.peer_owner_id == "222222222222"


class TestRouteTableResolution:
    def test_local_override(self, discovery):
        intents = render(make_descriptor(local_rtb="rtb-aaaaaaaa"), discovery)
        assert intents.local_route.route_table_id == "rtb-aaaaaaaa"
        assert LOCAL not in discovery.calls

    def test_local_discovered(self, discovery):
        intents = render(make_descriptor(), discovery)
        assert intents.local_route.route_table_id == "rtb-local-main"
        assert discovery.calls.count(LOCAL) == 1

    def test_sides_resolved_independently(self, discovery):
        intents = render(make_descriptor(remote_rtb="rtb-bbbbbbbb"), discovery)
        assert intents.local_route.route_table_id == "rtb-local-main"
        assert intents.remote_route.route_table_id == "rtb-bbbbbbbb"
        assert discovery.calls == [LOCAL]

    def test_both_overridden(self, discovery):
        render(make_descriptor(local_rtb="rtb-aaaaaaaa", remote_rtb="rtb-bbbbbbbb"), discovery)
        assert discovery.calls == []


class TestTags:
    def test_default_display_name(self):
        assert make_descriptor().display_name == "VPC Peering between default and bursting"

    def test_peering_link_tags(self):
        link = make_descriptor(tags={"Environment": "prod"}).peering_link()
        assert dict(link.tags) == {
            "Environment": "prod",
            "Name": "VPC Peering between default and bursting",
        }

    def test_accepter_tags_match_link(self, discovery):
        intents = render(make_descriptor(tags={"Environment": "prod"}), discovery)
        assert dict(intents.accepter.tags) == dict(intents.link.tags)

    def test_explicit_name(self):
        link = make_descriptor(name="prod-to-analytics").peering_link()
        assert dict(link.tags)["Name"] == "prod-to-analytics"

    def test_display_name_follows_side_names(self):
        descriptor = make_descriptor()
        local = dataclasses.replace(descriptor.local, name="core")
        remote = dataclasses.replace(descriptor.remote, name="analytics")
        assert peering_display_name(local, remote) == "VPC Peering between core and analytics"


class TestIngressRules:
    def test_full_port_range_all_protocols(self, discovery):
        for rule in render(make_descriptor(), discovery).ingress_rules:
            assert rule.direction == "ingress"
            assert rule.protocol == "-1"
            assert (rule.from_port, rule.to_port) == (0, 65535)


class TestImmutability:
    def test_intents_are_frozen(self, discovery):
        intents = render(make_descriptor(), discovery)
        with pytest.raises(dataclasses.FrozenInstanceError):
            intents.local_route.destination_cidr_block = LOCAL_CIDR


class TestHashing:
    def test_descriptor_hashable(self):
        descriptor = make_descriptor(tags={"Environment": "prod"})
        assert hash(descriptor) == hash(make_descriptor(tags={"Environment": "prod"}))

    def test_tags_given_as_pairs_or_mapping(self):
        assert make_descriptor(tags=(("Environment", "prod"),)) == make_descriptor(
            tags={"Environment": "prod"}
        )

    def test_rendered_intents_hashable(self, discovery):
        descriptor = make_descriptor(tags={"Environment": "prod"})
        intents = render(descriptor, discovery)

        assert {intents.link, descriptor.peering_link()} == {intents.link}
        assert intents in {intents}
