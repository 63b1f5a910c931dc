"""Shared mocks and event builders for the r53_records tests."""

from typing import Any, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError

from r53_records.handler import (
    Association,
    AssociationStore,
    EventDispatcher,
    InstanceLoader,
    LoadBalancerLoader,
    RecordMutator,
    ZoneResolver,
)

TAG_KEY = "bcs:route53:record"
INSTANCE_ID = "i-0123456789abcdef0"
LB_ARN = (
    "arn:aws:elasticloadbalancing:us-east-1:123456789012:"
    "loadbalancer/app/web/50dc6c495c0c9188"
)

# =============================================================================
# Mock Association Store
# =============================================================================


class MockAssociationStore(AssociationStore):
    """In-memory association store with call tracking."""

    def __init__(self, initial: Optional[List[Association]] = None):
        self.items: Dict[str, Association] = {}
        self.put_calls: List[str] = []
        self.delete_calls: List[str] = []
        for association in initial or []:
            self.items[association.resource_id] = association

    def get(self, resource_id: str) -> Optional[Association]:
        return self.items.get(resource_id)

    def put(
        self,
        resource_id: str,
        alias: str,
        snapshot: Dict[str, Any],
        ttl: Optional[int] = None,
    ) -> None:
        self.put_calls.append(resource_id)
        self.items[resource_id] = Association(resource_id, alias, dict(snapshot), ttl)

    def delete(self, resource_id: str) -> None:
        self.delete_calls.append(resource_id)
        self.items.pop(resource_id, None)


# =============================================================================
# Mock AWS Clients
# =============================================================================


class MockRoute53Client:
    """Route 53 client stand-in: a fixed zone list and recorded changes."""

    def __init__(self, zones: Optional[List[Dict[str, Any]]] = None):
        self.zones = zones if zones is not None else [make_zone("example.com", "ZEXAMPLE")]
        self.changes: List[Dict[str, Any]] = []
        self.zone_lookups: List[str] = []
        self.error: Optional[ClientError] = None

    def list_hosted_zones_by_name(self, DNSName: str) -> Dict[str, Any]:
        self.zone_lookups.append(DNSName)
        # Route 53 lists zones in order starting at DNSName.
        return {"HostedZones": sorted(
            (z for z in self.zones if z["Name"].rstrip(".") >= DNSName.rstrip(".")),
            key=lambda z: z["Name"],
        )}

    def change_resource_record_sets(self, HostedZoneId: str, ChangeBatch: Dict[str, Any]):
        if self.error is not None:
            raise self.error
        self.changes.append({"HostedZoneId": HostedZoneId, "ChangeBatch": ChangeBatch})
        return {"ChangeInfo": {"Id": f"/change/C{len(self.changes)}", "Status": "PENDING"}}

    @property
    def actions(self) -> List[tuple]:
        """(action, name, zone) for every submitted change."""
        return [
            (
                c["ChangeBatch"]["Changes"][0]["Action"],
                c["ChangeBatch"]["Changes"][0]["ResourceRecordSet"]["Name"],
                c["HostedZoneId"],
            )
            for c in self.changes
        ]


class MockEc2Client:
    def __init__(self, instances: Optional[List[Dict[str, Any]]] = None):
        self.instances = {i["InstanceId"]: i for i in instances or []}
        self.calls: List[List[str]] = []

    def describe_instances(self, InstanceIds: List[str]) -> Dict[str, Any]:
        self.calls.append(InstanceIds)
        found = [self.instances[i] for i in InstanceIds if i in self.instances]
        return {"Reservations": [{"Instances": found}] if found else []}


class MockElbv2Client:
    def __init__(self, balancers: Optional[List[Dict[str, Any]]] = None):
        self.balancers = {b["LoadBalancerArn"]: b for b in balancers or []}
        self.calls: List[List[str]] = []

    def describe_load_balancers(self, LoadBalancerArns: List[str]) -> Dict[str, Any]:
        self.calls.append(LoadBalancerArns)
        return {"LoadBalancers": [self.balancers[a] for a in LoadBalancerArns if a in self.balancers]}


def client_error(code: str, message: str, operation: str = "ChangeResourceRecordSets"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


# =============================================================================
# Builders
# =============================================================================


def make_zone(name: str, zone_id: str, private: bool = False) -> Dict[str, Any]:
    return {
        "Id": f"/hostedzone/{zone_id}",
        "Name": f"{name}.",
        "Config": {"PrivateZone": private},
    }


def make_instance(instance_id: str = INSTANCE_ID, address: str = "10.0.1.15") -> Dict[str, Any]:
    return {"InstanceId": instance_id, "PrivateIpAddress": address, "State": {"Name": "running"}}


def make_balancer(arn: str = LB_ARN, lb_type: str = "application") -> Dict[str, Any]:
    return {
        "LoadBalancerArn": arn,
        "CanonicalHostedZoneId": "Z35SXDOTRQ7X7K",
        "DNSName": "web-1234567890.us-east-1.elb.amazonaws.com",
        "Type": lb_type,
    }


def cloudtrail_event(source: str, event_name: str, params: Any, response: Any = None, **extra):
    detail = {
        "eventName": event_name,
        "eventSource": source.split(".", 1)[1] + ".amazonaws.com",
        "requestParameters": params,
        "responseElements": response,
    }
    detail.update(extra)
    return {"source": source, "detail-type": "AWS API Call via CloudTrail", "detail": detail}


def run_instances_event(alias: Optional[str], *instance_ids: str) -> Dict[str, Any]:
    params: Dict[str, Any] = {"instanceType": "t3.micro"}
    if alias is not None:
        params["tagSpecificationSet"] = {
            "items": [
                {
                    "resourceType": "instance",
                    "tags": [{"key": "Name", "value": "web"}, {"key": TAG_KEY, "value": alias}],
                }
            ]
        }
    response = {"instancesSet": {"items": [{"instanceId": i} for i in instance_ids or [INSTANCE_ID]]}}
    return cloudtrail_event("aws.ec2", "RunInstances", params, response)


def terminate_instances_event(*instance_ids: str) -> Dict[str, Any]:
    params = {"instancesSet": {"items": [{"instanceId": i} for i in instance_ids or [INSTANCE_ID]]}}
    return cloudtrail_event("aws.ec2", "TerminateInstances", params)


def ec2_tags_event(event_name: str, tags: List[Dict[str, str]], *resource_ids: str):
    params = {
        "resourcesSet": {"items": [{"resourceId": r} for r in resource_ids or [INSTANCE_ID]]},
        "tagSet": {"items": tags},
    }
    return cloudtrail_event("aws.ec2", event_name, params)


def create_load_balancer_event(alias: Optional[str], arn: str = LB_ARN) -> Dict[str, Any]:
    tags = [{"key": TAG_KEY, "value": alias}] if alias is not None else []
    params = {"name": "web", "type": "application", "tags": tags}
    response = {"loadBalancers": [{"loadBalancerArn": arn, "loadBalancerName": "web"}]}
    return cloudtrail_event("aws.elasticloadbalancing", "CreateLoadBalancer", params, response)


def delete_load_balancer_event(arn: str = LB_ARN) -> Dict[str, Any]:
    return cloudtrail_event(
        "aws.elasticloadbalancing", "DeleteLoadBalancer", {"loadBalancerArn": arn}
    )


def add_tags_event(tags: List[Dict[str, str]], *arns: str) -> Dict[str, Any]:
    params = {"resourceArns": list(arns or [LB_ARN]), "tags": tags}
    return cloudtrail_event("aws.elasticloadbalancing", "AddTags", params)


def remove_tags_event(tag_keys: List[str], *arns: str) -> Dict[str, Any]:
    params = {"resourceArns": list(arns or [LB_ARN]), "tagKeys": tag_keys}
    return cloudtrail_event("aws.elasticloadbalancing", "RemoveTags", params)


# =============================================================================
# Fixtures
# =============================================================================


class Harness:
    """A dispatcher wired to mocks, with the mocks exposed for assertions."""

    def __init__(
        self,
        store: MockAssociationStore,
        route53: MockRoute53Client,
        ec2: MockEc2Client,
        elbv2: MockElbv2Client,
    ):
        self.store = store
        self.route53 = route53
        self.ec2 = ec2
        self.elbv2 = elbv2
        self.dispatcher = EventDispatcher(
            store=store,
            zone_resolver=ZoneResolver(route53),
            mutator=RecordMutator(route53, store, ttl=300),
            instance_loader=InstanceLoader(ec2),
            balancer_loader=LoadBalancerLoader(elbv2),
            tag_key=TAG_KEY,
        )

    def dispatch(self, event: Dict[str, Any]):
        return self.dispatcher.dispatch(event)


@pytest.fixture
def harness() -> Harness:
    return Harness(
        store=MockAssociationStore(),
        route53=MockRoute53Client(),
        ec2=MockEc2Client([make_instance()]),
        elbv2=MockElbv2Client([make_balancer()]),
    )


@pytest.fixture
def aws_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """Fake credentials so moto never reaches a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
