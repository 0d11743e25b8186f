"""Admission validation for remediations, remediation templates and agent configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Union

from .types import (
    RemediationStrategy,
    SelfNodeRemediation,
    SelfNodeRemediationConfig,
    SelfNodeRemediationSpec,
    SelfNodeRemediationTemplate,
    Toleration,
)

log = logging.getLogger(__name__)

Validated = Union[SelfNodeRemediation, SelfNodeRemediationTemplate, SelfNodeRemediationConfig]

PEER_API_SERVER_TIMEOUT = "PeerApiServerTimeout"
API_SERVER_TIMEOUT = "ApiServerTimeout"
PEER_DIAL_TIMEOUT = "PeerDialTimeout"
PEER_REQUEST_TIMEOUT = "PeerRequestTimeout"
API_CHECK_INTERVAL = "ApiCheckInterval"
PEER_UPDATE_INTERVAL = "PeerUpdateInterval"

MIN_DUR_PEER_API_SERVER_TIMEOUT = timedelta(milliseconds=10)
MIN_DUR_API_SERVER_TIMEOUT = timedelta(milliseconds=10)
MIN_DUR_PEER_DIAL_TIMEOUT = timedelta(milliseconds=10)
MIN_DUR_PEER_REQUEST_TIMEOUT = timedelta(milliseconds=10)
MIN_DUR_API_CHECK_INTERVAL = timedelta(seconds=1)
MIN_DUR_PEER_UPDATE_INTERVAL = timedelta(seconds=10)

# (field name, spec attribute, minimum allowed duration), in validation order
_TIME_FIELDS = (
    (PEER_API_SERVER_TIMEOUT, "peer_api_server_timeout", MIN_DUR_PEER_API_SERVER_TIMEOUT),
    (API_SERVER_TIMEOUT, "api_server_timeout", MIN_DUR_API_SERVER_TIMEOUT),
    (PEER_DIAL_TIMEOUT, "peer_dial_timeout", MIN_DUR_PEER_DIAL_TIMEOUT),
    (PEER_REQUEST_TIMEOUT, "peer_request_timeout", MIN_DUR_PEER_REQUEST_TIMEOUT),
    (API_CHECK_INTERVAL, "api_check_interval", MIN_DUR_API_CHECK_INTERVAL),
    (PEER_UPDATE_INTERVAL, "peer_update_interval", MIN_DUR_PEER_UPDATE_INTERVAL),
)

VALID_TOLERATION_OPERATORS = ("Equal", "Exists")
VALID_TAINT_EFFECTS = ("NoSchedule", "PreferNoSchedule", "NoExecute")

OUT_OF_SERVICE_NOT_SUPPORTED_MESSAGE = (
    f"{RemediationStrategy.OUT_OF_SERVICE_TAINT.value} remediation strategy is not supported "
    "at kubernetes version lower than 1.26, please use a different remediation strategy"
)


class ValidationError(ValueError):
    """A rejected admission; holds one or more messages."""

    def __init__(self, *messages: str) -> None:
        self.errors: list[str] = list(messages)
        super().__init__(str(self))

    def __str__(self) -> str:
        if len(self.errors) == 1:
            return self.errors[0]
        return "[" + ", ".join(self.errors) + "]"


@dataclass
class Features:
    """Cluster capabilities that influence validation."""

    out_of_service_taint_supported: bool = False


FEATURES = Features()


def _format_duration(d: timedelta) -> str:
    """Render a duration the way cluster tooling prints it, e.g. 10ms, 1s, 1m30s."""
    total_ns = ((d.days * 86400 + d.seconds) * 1_000_000 + d.microseconds) * 1000
    sign = "-" if total_ns < 0 else ""
    u = abs(total_ns)
    if u == 0:
        return "0s"

    def with_fraction(whole: int, frac: int, digits: int) -> str:
        frac_text = str(frac).rjust(digits, "0").rstrip("0")
        return f"{whole}.{frac_text}" if frac_text else str(whole)

    if u < 1_000_000_000:
        for unit, divisor, digits in (("ns", 1, 0), ("µs", 1_000, 3), ("ms", 1_000_000, 6)):
            if u < divisor * 1000:
                whole, frac = divmod(u, divisor)
                return sign + (with_fraction(whole, frac, digits) if digits else str(whole)) + unit

    secs, frac = divmod(u, 1_000_000_000)
    hours, rest = divmod(secs, 3600)
    minutes, seconds = divmod(rest, 60)
    text = with_fraction(seconds, frac, 9) + "s"
    if hours:
        text = f"{hours}h{minutes}m" + text
    elif minutes:
        text = f"{minutes}m" + text
    return sign + text


def validate_strategy(spec: SelfNodeRemediationSpec) -> None:
    """Reject the out-of-service strategy on clusters that cannot honour it."""
    if (
        spec.remediation_strategy == RemediationStrategy.OUT_OF_SERVICE_TAINT
        and not FEATURES.out_of_service_taint_supported
    ):
        raise ValidationError(OUT_OF_SERVICE_NOT_SUPPORTED_MESSAGE)


def validate_times(config: SelfNodeRemediationConfig) -> None:
    """Reject time settings below their allowed minimum, reporting every offender."""
    message = ""
    for name, attribute, minimum in _TIME_FIELDS:
        value: Optional[timedelta] = getattr(config.spec, attribute)
        if value is None:
            value = timedelta(0)
        if value < minimum:
            message += f"\n{name} cannot be less than {_format_duration(minimum)}"
    if message:
        raise ValidationError(message)


def validate_toleration(toleration: Toleration) -> None:
    """Reject a toleration with an unknown operator or effect, or a value with Exists."""
    if toleration.operator:
        if toleration.operator == "Exists":
            if toleration.value:
                msg = "invalid value for toleration, value must be empty for Operator value is Exists"
                log.error(msg)
                raise ValidationError(msg)
        elif toleration.operator != "Equal":
            msg = f"invalid operator for toleration: {toleration.operator}"
            log.error("%s (valid values: %s)", msg, VALID_TOLERATION_OPERATORS)
            raise ValidationError(msg)

    if toleration.effect and toleration.effect not in VALID_TAINT_EFFECTS:
        msg = f"invalid taint effect for toleration: {toleration.effect}"
        log.error("%s (valid values: %s)", msg, VALID_TAINT_EFFECTS)
        raise ValidationError(msg)


def validate_custom_tolerations(config: SelfNodeRemediationConfig) -> None:
    """Validate the custom daemon set tolerations, stopping at the first bad one."""
    for toleration in config.spec.custom_ds_tolerations:
        validate_toleration(toleration)


def _validate_config(config: SelfNodeRemediationConfig) -> None:
    errors: list[str] = []
    for check in (validate_times, validate_custom_tolerations):
        try:
            check(config)
        except ValidationError as err:
            errors.extend(err.errors)
    if errors:
        raise ValidationError(*errors)


def _validate(obj: Validated) -> None:
    if isinstance(obj, SelfNodeRemediation):
        validate_strategy(obj.spec)
    elif isinstance(obj, SelfNodeRemediationTemplate):
        validate_strategy(obj.template)
    elif isinstance(obj, SelfNodeRemediationConfig):
        _validate_config(obj)
    else:
        raise TypeError(f"no validation defined for {type(obj).__name__}")


def validate_create(obj: Validated) -> None:
    """Validate a resource that is being created."""
    log.info("validate create: %s %s", obj.kind, obj.metadata.name)
    _validate(obj)


def validate_update(obj: Validated, old: Validated) -> None:
    """Validate the new version of a resource that is being updated."""
    log.info("validate update: %s %s", obj.kind, obj.metadata.name)
    _validate(obj)


def validate_delete(obj: Validated) -> None:
    """Deletion is always allowed."""
    log.info("validate delete: %s %s", obj.kind, obj.metadata.name)