"""
Table service properties: analytics logging, hour and minute metrics, and
CORS rules, exchanged as a ``StorageServiceProperties`` XML document.
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import List, Optional, Union

from tablezure.exceptions import ValidationError

ANALYTICS_VERSION = "1.0"
MAX_CORS_RULES = 5
MAX_RETENTION_DAYS = 365
CORS_METHODS = frozenset({"DELETE", "GET", "HEAD", "MERGE", "POST", "OPTIONS", "PUT"})


def _check_retention(days: Optional[int]) -> None:
    if days is not None and not 1 <= days <= MAX_RETENTION_DAYS:
        raise ValidationError(
            f"Retention days must be between 1 and {MAX_RETENTION_DAYS}",
            error_code="InvalidRetentionPolicy",
            details={"days": days},
        )


@dataclass
class LoggingProperties:
    """Which request kinds analytics logging records, and for how long."""
    version: str = ANALYTICS_VERSION
    delete: bool = False
    read: bool = False
    write: bool = False
    retention_days: Optional[int] = None

    def __post_init__(self):
        _check_retention(self.retention_days)


@dataclass
class MetricsProperties:
    """
    Hour or minute metrics settings.

    ``include_apis`` is only meaningful while metrics are enabled.
    """
    version: str = ANALYTICS_VERSION
    enabled: bool = False
    include_apis: Optional[bool] = None
    retention_days: Optional[int] = None

    def __post_init__(self):
        _check_retention(self.retention_days)
        if not self.enabled:
            self.include_apis = None


@dataclass
class CorsRule:
    allowed_origins: List[str] = field(default_factory=list)
    allowed_methods: List[str] = field(default_factory=list)
    allowed_headers: List[str] = field(default_factory=list)
    exposed_headers: List[str] = field(default_factory=list)
    max_age_in_seconds: int = 0

    def __post_init__(self):
        self.allowed_methods = [method.upper() for method in self.allowed_methods]
        unknown = sorted(set(self.allowed_methods) - CORS_METHODS)
        if unknown:
            raise ValidationError(
                f"Unsupported CORS methods: {', '.join(unknown)}",
                error_code="InvalidCorsRule",
                details={"methods": unknown},
            )
        if self.max_age_in_seconds < 0:
            raise ValidationError("max_age_in_seconds cannot be negative", error_code="InvalidCorsRule")


@dataclass
class ServiceProperties:
    """
    Properties of the Table service of one account.

    A section left as None is omitted from the document, so the service
    keeps its current value for it.
    """

    logging: Optional[LoggingProperties] = None
    hour_metrics: Optional[MetricsProperties] = None
    minute_metrics: Optional[MetricsProperties] = None
    cors: Optional[List[CorsRule]] = None

    def __post_init__(self):
        if self.cors is not None and len(self.cors) > MAX_CORS_RULES:
            raise ValidationError(
                f"At most {MAX_CORS_RULES} CORS rules may be set",
                error_code="InvalidCorsRule",
                details={"count": len(self.cors)},
            )

    def to_xml(self) -> bytes:
        root = ET.Element("StorageServiceProperties")
        if self.logging is not None:
            element = ET.SubElement(root, "Logging")
            ET.SubElement(element, "Version").text = self.logging.version
            ET.SubElement(element, "Delete").text = _bool_text(self.logging.delete)
            ET.SubElement(element, "Read").text = _bool_text(self.logging.read)
            ET.SubElement(element, "Write").text = _bool_text(self.logging.write)
            _write_retention(element, self.logging.retention_days)
        if self.hour_metrics is not None:
            _write_metrics(root, "HourMetrics", self.hour_metrics)
        if self.minute_metrics is not None:
            _write_metrics(root, "MinuteMetrics", self.minute_metrics)
        if self.cors is not None:
            cors = ET.SubElement(root, "Cors")
            for rule in self.cors:
                element = ET.SubElement(cors, "CorsRule")
                ET.SubElement(element, "AllowedOrigins").text = ",".join(rule.allowed_origins)
                ET.SubElement(element, "AllowedMethods").text = ",".join(rule.allowed_methods)
                ET.SubElement(element, "ExposedHeaders").text = ",".join(rule.exposed_headers)
                ET.SubElement(element, "AllowedHeaders").text = ",".join(rule.allowed_headers)
                ET.SubElement(element, "MaxAgeInSeconds").text = str(rule.max_age_in_seconds)
        return b'<?xml version="1.0" encoding="utf-8"?>' + ET.tostring(root, encoding="utf-8", xml_declaration=False)

    @classmethod
    def from_xml(cls, data: Union[bytes, str]) -> "ServiceProperties":
        """
        Parse a ``StorageServiceProperties`` document.

        Raises:
            ValidationError: If the document is malformed
        """
        try:
            root = ET.fromstring(data)
        except ET.ParseError as exc:
            raise ValidationError(f"Malformed StorageServiceProperties document: {exc}") from exc
        if root.tag != "StorageServiceProperties":
            raise ValidationError(f"Unexpected root element: {root.tag}")

        logging_properties = None
        element = root.find("Logging")
        if element is not None:
            logging_properties = LoggingProperties(
                version=element.findtext("Version") or ANALYTICS_VERSION,
                delete=_parse_bool(element.findtext("Delete")),
                read=_parse_bool(element.findtext("Read")),
                write=_parse_bool(element.findtext("Write")),
                retention_days=_read_retention(element),
            )
        rules = None
        cors = root.find("Cors")
        if cors is not None:
            rules = [
                CorsRule(
                    allowed_origins=_split(rule.findtext("AllowedOrigins")),
                    allowed_methods=_split(rule.findtext("AllowedMethods")),
                    allowed_headers=_split(rule.findtext("AllowedHeaders")),
                    exposed_headers=_split(rule.findtext("ExposedHeaders")),
                    max_age_in_seconds=int(rule.findtext("MaxAgeInSeconds") or 0),
                )
                for rule in cors.findall("CorsRule")
            ]
        return cls(
            logging=logging_properties,
            hour_metrics=_read_metrics(root.find("HourMetrics")),
            minute_metrics=_read_metrics(root.find("MinuteMetrics")),
            cors=rules,
        )

    def merged_over(self, current: "ServiceProperties") -> "ServiceProperties":
        """Sections set here replace the matching sections of ``current``."""
        return ServiceProperties(
            logging=self.logging if self.logging is not None else current.logging,
            hour_metrics=self.hour_metrics if self.hour_metrics is not None else current.hour_metrics,
            minute_metrics=self.minute_metrics if self.minute_metrics is not None else current.minute_metrics,
            cors=self.cors if self.cors is not None else current.cors,
        )


def _bool_text(value: bool) -> str:
    return "true" if value else "false"


def _parse_bool(text: Optional[str]) -> bool:
    return (text or "").strip().lower() == "true"


def _split(text: Optional[str]) -> List[str]:
    return [part.strip() for part in (text or "").split(",") if part.strip()]


def _write_retention(parent: ET.Element, days: Optional[int]) -> None:
    element = ET.SubElement(parent, "RetentionPolicy")
    ET.SubElement(element, "Enabled").text = _bool_text(days is not None)
    if days is not None:
        ET.SubElement(element, "Days").text = str(days)


def _read_retention(parent: ET.Element) -> Optional[int]:
    element = parent.find("RetentionPolicy")
    if element is None or not _parse_bool(element.findtext("Enabled")):
        return None
    days = element.findtext("Days")
    return int(days) if days else None


def _write_metrics(root: ET.Element, tag: str, metrics: MetricsProperties) -> None:
    element = ET.SubElement(root, tag)
    ET.SubElement(element, "Version").text = metrics.version
    ET.SubElement(element, "Enabled").text = _bool_text(metrics.enabled)
    if metrics.enabled:
        ET.SubElement(element, "IncludeAPIs").text = _bool_text(bool(metrics.include_apis))
    _write_retention(element, metrics.retention_days)


def _read_metrics(element: Optional[ET.Element]) -> Optional[MetricsProperties]:
    if element is None:
        return None
    include = element.findtext("IncludeAPIs")
    return MetricsProperties(
        version=element.findtext("Version") or ANALYTICS_VERSION,
        enabled=_parse_bool(element.findtext("Enabled")),
        include_apis=_parse_bool(include) if include is not None else None,
        retention_days=_read_retention(element),
    )
