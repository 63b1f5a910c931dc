#!/usr/bin/env python3
"""r53-records - Route 53 records for tagged EC2 instances and load balancers

Keeps Route 53 records in step with EC2 instances and ELBv2 load balancers,
driven by CloudTrail API events delivered through EventBridge. A resource opts
in by carrying the designated tag; the tag value is the record name to manage.

Handled events:

    aws.ec2:
        RunInstances           Link a new instance (A record -> private IP)
        TerminateInstances     Remove the record of a linked instance
        CreateTags             Link an instance when the tag is added
        DeleteTags             Remove the record when the tag is removed

    aws.elasticloadbalancing:
        CreateLoadBalancer     Link a new load balancer (alias A record)
        DeleteLoadBalancer     Remove the record of a linked load balancer
        AddTags                Link a load balancer when the tag is added
        RemoveTags             Remove the record when the tag is removed

Links are tracked in a DynamoDB table ({"id", "alias", "object"}) so that
deletion events can be handled after the resource itself is gone.

Environment variables:

    R53_RECORDS_CONFIG         Optional YAML file with any of the settings below
                               (keys: tag_key, table_name, ttl, zone_privacy,
                               log_level). Environment variables win.
    R53_RECORDS_TAG_KEY        Designated tag key (default: bcs:route53:record)
    R53_RECORDS_TABLE          DynamoDB table name (default: Route53Records)
    R53_RECORDS_TTL            TTL of instance A records (default: 300)
    R53_RECORDS_ZONE_PRIVACY   Hosted zones to consider: "any", "private" or
                               "public" (default: any)
    LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import boto3
import yaml
from botocore.exceptions import ClientError

# =============================================================================
# Constants
# =============================================================================

DEFAULT_TAG_KEY = "bcs:route53:record"
DEFAULT_TABLE_NAME = "Route53Records"
DEFAULT_TTL = 300
ZONE_PRIVACY_CHOICES = ("any", "private", "public")

EC2_SOURCE = "aws.ec2"
ELB_SOURCE = "aws.elasticloadbalancing"

UPSERT = "UPSERT"
DELETE = "DELETE"

# =============================================================================
# Logging Setup
# =============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Apply the log level to the root logger.

    The Lambda runtime installs its own root handler before this module is
    imported, which turns basicConfig into a no-op.
    """
    logging.getLogger().setLevel(getattr(logging, level.upper(), logging.INFO))


# =============================================================================
# Errors
# =============================================================================


class RecordsError(Exception):
    """Base class for record management failures."""


class ConfigError(RecordsError):
    """Invalid or unreadable configuration."""


class ZoneNotFoundError(RecordsError):
    """No hosted zone owns the requested record name."""


class AmbiguousZoneError(RecordsError):
    """More than one hosted zone owns the requested record name."""


class ResourceNotFoundError(RecordsError):
    """The inventory API did not return exactly one resource."""


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class Settings:
    """Runtime settings passed to the components at construction."""

    tag_key: str = DEFAULT_TAG_KEY
    table_name: str = DEFAULT_TABLE_NAME
    ttl: int = DEFAULT_TTL
    zone_privacy: str = "any"
    log_level: str = "INFO"


_ENV_SETTINGS = {
    "R53_RECORDS_TAG_KEY": "tag_key",
    "R53_RECORDS_TABLE": "table_name",
    "R53_RECORDS_TTL": "ttl",
    "R53_RECORDS_ZONE_PRIVACY": "zone_privacy",
    "LOG_LEVEL": "log_level",
}


def _read_config_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a YAML mapping")

    known = set(_ENV_SETTINGS.values())
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning(f"Ignoring unknown keys in {path}: {', '.join(unknown)}")
    return {k: v for k, v in data.items() if k in known}


def validate_settings(settings: Settings) -> List[str]:
    """Return a list of configuration errors (empty when valid)."""
    errors = []
    if not settings.tag_key.strip():
        errors.append("tag_key must not be empty")
    if not settings.table_name.strip():
        errors.append("table_name must not be empty")
    if settings.ttl <= 0:
        errors.append(f"ttl must be positive, got {settings.ttl}")
    if settings.zone_privacy not in ZONE_PRIVACY_CHOICES:
        errors.append(
            f"zone_privacy must be one of {', '.join(ZONE_PRIVACY_CHOICES)}, "
            f"got '{settings.zone_privacy}'"
        )
    return errors


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the optional YAML file and the environment."""
    if environ is None:
        environ = os.environ

    values: Dict[str, Any] = {}
    config_path = environ.get("R53_RECORDS_CONFIG", "").strip()
    if config_path:
        values.update(_read_config_file(config_path))

    for env_name, key in _ENV_SETTINGS.items():
        raw = environ.get(env_name)
        if raw is not None and raw.strip():
            values[key] = raw.strip()

    try:
        ttl = int(values.get("ttl", DEFAULT_TTL))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"ttl must be an integer: {e}") from e

    settings = Settings(
        tag_key=str(values.get("tag_key", DEFAULT_TAG_KEY)),
        table_name=str(values.get("table_name", DEFAULT_TABLE_NAME)),
        ttl=ttl,
        zone_privacy=str(values.get("zone_privacy", "any")).lower(),
        log_level=str(values.get("log_level", "INFO")).upper(),
    )

    errors = validate_settings(settings)
    if errors:
        raise ConfigError("Invalid configuration: " + "; ".join(errors))
    return settings


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Association:
    """Link between a resource and the record created for it."""

    resource_id: str
    alias: str
    snapshot: Dict[str, Any] = field(default_factory=dict)
    ttl: Optional[int] = None


@dataclass(frozen=True)
class HostedZone:
    """Hosted zone candidate returned by Route 53."""

    zone_id: str
    name: str
    private: bool = False


@dataclass(frozen=True)
class RecordChange:
    """A change submitted to Route 53."""

    action: str
    alias: str
    resource_id: str
    zone_id: str
    change_id: str = ""


# =============================================================================
# Association Store
# =============================================================================


def to_item_value(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a describe_* result into values DynamoDB accepts.

    Datetimes become ISO strings and floats become Decimal.
    """
    return json.loads(
        json.dumps(snapshot, default=_json_default),
        parse_float=Decimal,
    )


def _json_default(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class AssociationStore(ABC):
    """Abstract key-value store of resource -> alias associations."""

    @abstractmethod
    def get(self, resource_id: str) -> Optional[Association]:
        """Return the association for resource_id, or None."""
        pass

    @abstractmethod
    def put(
        self,
        resource_id: str,
        alias: str,
        snapshot: Dict[str, Any],
        ttl: Optional[int] = None,
    ) -> None:
        """Create or overwrite the association for resource_id.

        ttl is the TTL the record was written with; a later DELETE must repeat it.
        """
        pass

    @abstractmethod
    def delete(self, resource_id: str) -> None:
        """Remove the association for resource_id if present."""
        pass


class DynamoDBAssociationStore(AssociationStore):
    """Association store backed by a DynamoDB table keyed on "id".

    The applied TTL lives in "recordTtl" so it cannot collide with a table TTL
    attribute named "ttl".
    """

    def __init__(self, table: Any):
        self._table = table

    def get(self, resource_id: str) -> Optional[Association]:
        response = self._table.get_item(Key={"id": resource_id})
        item = response.get("Item")
        if not item:
            return None
        return Association(
            resource_id=str(item["id"]),
            alias=str(item.get("alias") or ""),
            snapshot=dict(item.get("object") or {}),
            ttl=int(item["recordTtl"]) if item.get("recordTtl") is not None else None,
        )

    def put(
        self,
        resource_id: str,
        alias: str,
        snapshot: Dict[str, Any],
        ttl: Optional[int] = None,
    ) -> None:
        item = {"id": resource_id, "alias": alias, "object": to_item_value(snapshot)}
        if ttl is not None:
            item["recordTtl"] = ttl
        self._table.put_item(Item=item)
        logger.debug(f"Stored association {resource_id} -> {alias}")

    def delete(self, resource_id: str) -> None:
        self._table.delete_item(Key={"id": resource_id})
        logger.debug(f"Removed association for {resource_id}")


# =============================================================================
# Zone Resolver
# =============================================================================


def parent_domain(alias: str) -> str:
    """Strip the leftmost label: "svc.example.com" -> "example.com"."""
    name = alias.strip().rstrip(".")
    _, sep, parent = name.partition(".")
    if not sep or not parent:
        raise ZoneNotFoundError(f"Record name '{alias}' has no parent domain")
    return parent


class ZoneResolver:
    """Resolve the hosted zone that owns a record name."""

    def __init__(self, route53_client: Any, zone_privacy: str = "any"):
        self._route53 = route53_client
        self._zone_privacy = zone_privacy

    def find_zones(self, domain: str) -> List[HostedZone]:
        response = self._route53.list_hosted_zones_by_name(DNSName=domain)
        wanted = domain.rstrip(".").lower()

        zones = []
        for zone in response.get("HostedZones", []):
            if zone.get("Name", "").rstrip(".").lower() != wanted:
                continue
            private = bool(zone.get("Config", {}).get("PrivateZone", False))
            if self._zone_privacy == "private" and not private:
                continue
            if self._zone_privacy == "public" and private:
                continue
            zones.append(
                HostedZone(zone_id=zone["Id"].split("/")[-1], name=wanted, private=private)
            )
        return zones

    def resolve(self, alias: str) -> str:
        domain = parent_domain(alias)
        zones = self.find_zones(domain)

        if not zones:
            raise ZoneNotFoundError(
                f"No {self._zone_privacy} hosted zone named '{domain}' for '{alias}'"
            )
        if len(zones) > 1:
            raise AmbiguousZoneError(
                f"{len(zones)} hosted zones named '{domain}' for '{alias}': "
                f"{', '.join(z.zone_id for z in zones)}"
            )

        logger.debug(f"Resolved {alias} to zone {zones[0].zone_id} ({domain})")
        return zones[0].zone_id


# =============================================================================
# Resource Description Loaders
# =============================================================================


class ResourceLoader(ABC):
    """Abstract loader for one kind of resource that can carry a record."""

    @property
    @abstractmethod
    def kind(self) -> str:
        """Return the resource kind for logging."""
        pass

    @abstractmethod
    def load(self, resource_id: str) -> Dict[str, Any]:
        """Fetch the current attributes of a resource."""
        pass

    @abstractmethod
    def resource_id(self, snapshot: Dict[str, Any]) -> str:
        """Return the identifier of a loaded resource."""
        pass

    @abstractmethod
    def record_set(self, alias: str, snapshot: Dict[str, Any], ttl: int) -> Dict[str, Any]:
        """Build the resource record set pointing alias at the resource."""
        pass


class InstanceLoader(ResourceLoader):
    """EC2 instances, published as A records to their private address."""

    def __init__(self, ec2_client: Any):
        self._ec2 = ec2_client

    @property
    def kind(self) -> str:
        return "instance"

    def load(self, resource_id: str) -> Dict[str, Any]:
        response = self._ec2.describe_instances(InstanceIds=[resource_id])
        instances = [
            instance
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]
        if len(instances) != 1:
            raise ResourceNotFoundError(
                f"Expected one instance for {resource_id}, got {len(instances)}"
            )
        return instances[0]

    def resource_id(self, snapshot: Dict[str, Any]) -> str:
        return str(snapshot["InstanceId"])

    def record_set(self, alias: str, snapshot: Dict[str, Any], ttl: int) -> Dict[str, Any]:
        address = snapshot.get("PrivateIpAddress")
        if not address:
            raise RecordsError(f"Instance {snapshot.get('InstanceId')} has no private address")
        return {
            "Name": alias,
            "Type": "A",
            "TTL": ttl,
            "ResourceRecords": [{"Value": address}],
        }


class LoadBalancerLoader(ResourceLoader):
    """ELBv2 load balancers, published as alias A records."""

    def __init__(self, elbv2_client: Any):
        self._elbv2 = elbv2_client

    @property
    def kind(self) -> str:
        return "load balancer"

    def load(self, resource_id: str) -> Dict[str, Any]:
        response = self._elbv2.describe_load_balancers(LoadBalancerArns=[resource_id])
        balancers = response.get("LoadBalancers", [])
        if len(balancers) != 1:
            raise ResourceNotFoundError(
                f"Expected one load balancer for {resource_id}, got {len(balancers)}"
            )
        return balancers[0]

    def resource_id(self, snapshot: Dict[str, Any]) -> str:
        return str(snapshot["LoadBalancerArn"])

    def record_set(self, alias: str, snapshot: Dict[str, Any], ttl: int) -> Dict[str, Any]:
        # Alias records take their TTL from the target.
        prefix = "dualstack." if snapshot.get("Type") == "application" else ""
        return {
            "Name": alias,
            "Type": "A",
            "AliasTarget": {
                "HostedZoneId": snapshot["CanonicalHostedZoneId"],
                "DNSName": f"{prefix}{snapshot['DNSName']}.",
                "EvaluateTargetHealth": True,
            },
        }


# =============================================================================
# Record Mutator
# =============================================================================


def _is_missing_record_error(error: ClientError) -> bool:
    details = error.response.get("Error", {})
    return details.get("Code") == "InvalidChangeBatch" and "not found" in str(
        details.get("Message", "")
    )


class RecordMutator:
    """Submit record changes and keep the association store in step."""

    def __init__(self, route53_client: Any, store: AssociationStore, ttl: int = DEFAULT_TTL):
        self._route53 = route53_client
        self._store = store
        self._ttl = ttl

    def apply(
        self,
        zone_id: str,
        alias: str,
        loader: ResourceLoader,
        snapshot: Dict[str, Any],
        upsert: bool,
        *,
        ttl: Optional[int] = None,
        track: bool = True,
    ) -> RecordChange:
        """Submit one UPSERT or DELETE, then update the store if track is set.

        ttl defaults to the configured TTL; deletes pass the TTL the record was
        created with, since Route 53 only deletes an exact match.
        """
        resource_id = loader.resource_id(snapshot)
        action = UPSERT if upsert else DELETE
        ttl = self._ttl if ttl is None else ttl
        change_batch = {
            "Comment": f"{action} {alias} for {loader.kind} {resource_id}",
            "Changes": [
                {
                    "Action": action,
                    "ResourceRecordSet": loader.record_set(alias, snapshot, ttl),
                }
            ],
        }

        logger.info(f"Change batch for zone {zone_id}: {json.dumps(change_batch)}")
        change_id = ""
        try:
            response = self._route53.change_resource_record_sets(
                HostedZoneId=zone_id, ChangeBatch=change_batch
            )
            change_id = response["ChangeInfo"]["Id"]
            logger.info(f"Change ID: {change_id}")
        except ClientError as e:
            if upsert or not _is_missing_record_error(e):
                raise
            logger.warning(f"Record {alias} already absent from zone {zone_id}: {e}")

        # Only record what Route 53 accepted.
        if track and upsert:
            self._store.put(resource_id, alias, snapshot, ttl=ttl)
        elif track:
            self._store.delete(resource_id)

        return RecordChange(
            action=action,
            alias=alias,
            resource_id=resource_id,
            zone_id=zone_id,
            change_id=change_id,
        )


# =============================================================================
# Event Dispatcher
# =============================================================================


def _find_tag(tags: Any, tag_key: str) -> Optional[Dict[str, Any]]:
    """Return the last {"key", "value"} entry for tag_key, as CloudTrail lists them."""
    if not isinstance(tags, list):
        return None
    matches = [t for t in tags if isinstance(t, dict) and t.get("key") == tag_key]
    return matches[-1] if matches else None


def _has_key(tag_keys: Any, tag_key: str) -> bool:
    return isinstance(tag_keys, list) and tag_key in tag_keys


def _items(container: Any) -> List[Dict[str, Any]]:
    """Unwrap CloudTrail's {"items": [...]} lists."""
    if not isinstance(container, dict):
        return []
    return [i for i in container.get("items") or [] if isinstance(i, dict)]


def _is_instance_id(resource_id: Any) -> bool:
    return isinstance(resource_id, str) and resource_id.startswith("i-")


def _is_load_balancer_arn(resource_id: Any) -> bool:
    return isinstance(resource_id, str) and ":loadbalancer/" in resource_id


Handler = Callable[[Dict[str, Any]], List[RecordChange]]


class EventDispatcher:
    """Route CloudTrail events to the matching record scenario."""

    def __init__(
        self,
        *,
        store: AssociationStore,
        zone_resolver: ZoneResolver,
        mutator: RecordMutator,
        instance_loader: ResourceLoader,
        balancer_loader: ResourceLoader,
        tag_key: str = DEFAULT_TAG_KEY,
    ):
        self.store = store
        self.zone_resolver = zone_resolver
        self.mutator = mutator
        self.instance_loader = instance_loader
        self.balancer_loader = balancer_loader
        self.tag_key = tag_key
        self._handlers: Dict[Tuple[str, str], Handler] = {
            (EC2_SOURCE, "RunInstances"): self._on_run_instances,
            (EC2_SOURCE, "TerminateInstances"): self._on_terminate_instances,
            (EC2_SOURCE, "CreateTags"): self._on_create_tags,
            (EC2_SOURCE, "DeleteTags"): self._on_delete_tags,
            (ELB_SOURCE, "CreateLoadBalancer"): self._on_create_load_balancer,
            (ELB_SOURCE, "DeleteLoadBalancer"): self._on_delete_load_balancer,
            (ELB_SOURCE, "AddTags"): self._on_add_tags,
            (ELB_SOURCE, "RemoveTags"): self._on_remove_tags,
        }

    def dispatch(self, event: Dict[str, Any]) -> List[RecordChange]:
        detail = event.get("detail") or {}
        key = (str(event.get("source", "")), str(detail.get("eventName", "")))

        handler = self._handlers.get(key)
        if handler is None:
            logger.debug(f"Ignoring event {key[0]}/{key[1]}")
            return []

        if detail.get("errorCode"):
            logger.info(f"Ignoring failed {key[1]} call: {detail.get('errorCode')}")
            return []

        return handler(detail)

    # -------------------------------------------------------------------------
    # Shared steps
    # -------------------------------------------------------------------------

    def _link(self, loader: ResourceLoader, resource_id: str, alias: str) -> List[RecordChange]:
        """Load a resource and point alias at it, then drop any previous alias.

        The new record is written before the old one is removed, so a failure
        on the new alias leaves the existing link untouched.
        """
        snapshot = loader.load(resource_id)
        previous = self.store.get(resource_id)

        zone_id = self.zone_resolver.resolve(alias)
        changes = [self.mutator.apply(zone_id, alias, loader, snapshot, True)]

        if previous and previous.alias and previous.alias != alias:
            logger.info(
                f"{loader.kind.capitalize()} {resource_id} moved from {previous.alias} to {alias}"
            )
            try:
                old_zone_id = self.zone_resolver.resolve(previous.alias)
            except ZoneNotFoundError as e:
                logger.warning(f"Leaving {previous.alias} in place: {e}")
            else:
                # The association now belongs to the new alias.
                changes.append(
                    self.mutator.apply(
                        old_zone_id,
                        previous.alias,
                        loader,
                        previous.snapshot,
                        False,
                        ttl=previous.ttl,
                        track=False,
                    )
                )
        return changes

    def _unlink(self, loader: ResourceLoader, association: Association) -> RecordChange:
        zone_id = self.zone_resolver.resolve(association.alias)
        return self.mutator.apply(
            zone_id, association.alias, loader, association.snapshot, False, ttl=association.ttl
        )

    def _unlink_by_id(self, loader: ResourceLoader, resource_id: str) -> List[RecordChange]:
        association = self.store.get(resource_id)
        if association is None:
            logger.debug(f"No record linked to {loader.kind} {resource_id}")
            return []
        return [self._unlink(loader, association)]

    def _first(self, resource_ids: List[str], kind: str, alias: str) -> Optional[str]:
        if not resource_ids:
            return None
        if len(resource_ids) > 1:
            logger.warning(
                f"{len(resource_ids)} {kind}s tagged with {alias}; "
                f"linking {resource_ids[0]} only"
            )
        return resource_ids[0]

    # -------------------------------------------------------------------------
    # EC2
    # -------------------------------------------------------------------------

    def _on_run_instances(self, detail: Dict[str, Any]) -> List[RecordChange]:
        params = detail.get("requestParameters") or {}
        specs = _items(params.get("tagSpecificationSet"))
        tags = [
            tag
            for spec in specs
            if spec.get("resourceType", "instance") == "instance"
            for tag in spec.get("tags") or []
        ]
        entry = _find_tag(tags, self.tag_key)
        if not entry or not entry.get("value"):
            return []

        alias = entry["value"]
        launched = [
            i.get("instanceId")
            for i in _items((detail.get("responseElements") or {}).get("instancesSet"))
        ]
        instance_id = self._first([i for i in launched if _is_instance_id(i)], "instance", alias)
        if instance_id is None:
            return []
        return self._link(self.instance_loader, instance_id, alias)

    def _on_terminate_instances(self, detail: Dict[str, Any]) -> List[RecordChange]:
        params = detail.get("requestParameters") or {}
        changes: List[RecordChange] = []
        for item in _items(params.get("instancesSet")):
            instance_id = item.get("instanceId")
            if _is_instance_id(instance_id):
                changes.extend(self._unlink_by_id(self.instance_loader, instance_id))
        return changes

    def _tagged_instances(self, params: Dict[str, Any]) -> List[str]:
        return [
            item["resourceId"]
            for item in _items(params.get("resourcesSet"))
            if _is_instance_id(item.get("resourceId"))
        ]

    def _on_create_tags(self, detail: Dict[str, Any]) -> List[RecordChange]:
        params = detail.get("requestParameters") or {}
        entry = _find_tag(_items(params.get("tagSet")), self.tag_key)
        if not entry or not entry.get("value"):
            return []

        alias = entry["value"]
        instance_id = self._first(self._tagged_instances(params), "instance", alias)
        if instance_id is None:
            return []
        return self._link(self.instance_loader, instance_id, alias)

    def _on_delete_tags(self, detail: Dict[str, Any]) -> List[RecordChange]:
        params = detail.get("requestParameters") or {}
        entry = _find_tag(_items(params.get("tagSet")), self.tag_key)
        if not entry:
            return []

        changes: List[RecordChange] = []
        for instance_id in self._tagged_instances(params):
            association = self.store.get(instance_id)
            if association is not None:
                changes.append(self._unlink(self.instance_loader, association))
            elif entry.get("value"):
                # Not linked by us, but the request names the record to drop.
                snapshot = self.instance_loader.load(instance_id)
                zone_id = self.zone_resolver.resolve(entry["value"])
                changes.append(
                    self.mutator.apply(
                        zone_id, entry["value"], self.instance_loader, snapshot, False
                    )
                )
            else:
                logger.debug(f"No record linked to instance {instance_id}")
        return changes

    # -------------------------------------------------------------------------
    # Elastic Load Balancing
    # -------------------------------------------------------------------------

    def _on_create_load_balancer(self, detail: Dict[str, Any]) -> List[RecordChange]:
        params = detail.get("requestParameters") or {}
        entry = _find_tag(params.get("tags"), self.tag_key)
        if not entry or not entry.get("value"):
            return []

        balancers = (detail.get("responseElements") or {}).get("loadBalancers") or []
        arns = [b.get("loadBalancerArn") for b in balancers if isinstance(b, dict)]
        arn = self._first([a for a in arns if a], "load balancer", entry["value"])
        if arn is None:
            logger.debug("CreateLoadBalancer response carries no load balancer ARN")
            return []
        return self._link(self.balancer_loader, arn, entry["value"])

    def _on_delete_load_balancer(self, detail: Dict[str, Any]) -> List[RecordChange]:
        params = detail.get("requestParameters") or {}
        arn = params.get("loadBalancerArn")
        if not arn:
            return []
        return self._unlink_by_id(self.balancer_loader, arn)

    def _tagged_balancers(self, params: Dict[str, Any]) -> List[str]:
        return [a for a in params.get("resourceArns") or [] if _is_load_balancer_arn(a)]

    def _on_add_tags(self, detail: Dict[str, Any]) -> List[RecordChange]:
        params = detail.get("requestParameters") or {}
        entry = _find_tag(params.get("tags"), self.tag_key)
        if not entry or not entry.get("value"):
            return []

        arn = self._first(self._tagged_balancers(params), "load balancer", entry["value"])
        if arn is None:
            return []
        return self._link(self.balancer_loader, arn, entry["value"])

    def _on_remove_tags(self, detail: Dict[str, Any]) -> List[RecordChange]:
        params = detail.get("requestParameters") or {}
        if not _has_key(params.get("tagKeys"), self.tag_key):
            return []

        changes: List[RecordChange] = []
        for arn in self._tagged_balancers(params):
            changes.extend(self._unlink_by_id(self.balancer_loader, arn))
        return changes


# =============================================================================
# Factory
# =============================================================================


def create_dispatcher(settings: Settings, session: Any = None) -> EventDispatcher:
    """Wire the dispatcher to AWS clients from one boto3 session."""
    session = session or boto3.Session()
    route53 = session.client("route53")
    store = DynamoDBAssociationStore(session.resource("dynamodb").Table(settings.table_name))

    return EventDispatcher(
        store=store,
        zone_resolver=ZoneResolver(route53, zone_privacy=settings.zone_privacy),
        mutator=RecordMutator(route53, store, ttl=settings.ttl),
        instance_loader=InstanceLoader(session.client("ec2")),
        balancer_loader=LoadBalancerLoader(session.client("elbv2")),
        tag_key=settings.tag_key,
    )


# =============================================================================
# Main
# =============================================================================

_dispatcher: Optional[EventDispatcher] = None


def get_dispatcher() -> EventDispatcher:
    """Return the dispatcher shared by warm invocations."""
    global _dispatcher
    if _dispatcher is None:
        settings = load_settings()
        configure_logging(settings.log_level)
        _dispatcher = create_dispatcher(settings)
    return _dispatcher


def lambda_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    """Lambda entry point for EventBridge CloudTrail events."""
    logger.info(f"Event: {json.dumps(event, default=str)}")
    changes = get_dispatcher().dispatch(event)
    return {"changes": [asdict(c) for c in changes]}


def _read_events(paths: List[str]) -> List[Tuple[str, Dict[str, Any]]]:
    if not paths:
        return [("<stdin>", json.load(sys.stdin))]

    events = []
    for path in paths:
        with open(path, "r") as f:
            events.append((path, json.load(f)))
    return events


def main(argv: Optional[List[str]] = None) -> None:
    """Replay recorded events against the configured account."""
    args = sys.argv[1:] if argv is None else argv

    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)
    configure_logging(settings.log_level)

    logger.info(
        f"r53-records: tag {settings.tag_key}, table {settings.table_name}, "
        f"ttl {settings.ttl}, zones {settings.zone_privacy}"
    )

    try:
        events = _read_events(args)
        dispatcher = create_dispatcher(settings)
        for source, event in events:
            changes = dispatcher.dispatch(event)
            logger.info(f"{source}: {len(changes)} change(s)")
            for change in changes:
                print(json.dumps(asdict(change)))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
