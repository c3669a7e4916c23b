from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from device_ledger.config.logging import get_logger, log_json
from device_ledger.config.settings import DEFAULT_VPN_ISP_KEYWORDS
from device_ledger.core.models import (
    Admission,
    CaptureOutcome,
    DeviceRecord,
    LocationRecord,
    NormalizedAttributes,
)
from device_ledger.core.time import utc_now
from device_ledger.dedupe.fingerprint import Fingerprinter, short_id
from device_ledger.dedupe.guard import DuplicateGuard
from device_ledger.enrich.user_agent import parse_user_agent
from device_ledger.geo.resolver import GeoResolver
from device_ledger.geo.vpn import assess_vpn
from device_ledger.normalize.attributes import client_fingerprint, extract_coordinates, normalize
from device_ledger.storage.base import RecordStore

logger = get_logger(__name__)


def attach_vpn(location: LocationRecord, attrs: NormalizedAttributes, keywords: Iterable[str]) -> LocationRecord:
    vpn = assess_vpn(
        origin=attrs.origin,
        client_timezone=attrs.get("timezone.name"),
        network_timezone=location.timezone,
        client_public_ip=attrs.get("network.public_ip"),
        isp=location.isp,
        org=location.org,
        keywords=keywords,
    )
    return replace(location, vpn=vpn)


class CaptureOrchestrator:
    """normalize -> fingerprint -> guard -> enrich -> persist.

    Known fingerprints return before any provider call or write. The insert
    is the final word on uniqueness: a race lost there is reported as a
    duplicate, same as a pre-check hit.
    """

    def __init__(
        self,
        *,
        store: RecordStore,
        resolver: GeoResolver,
        fingerprinter: Optional[Fingerprinter] = None,
        vpn_keywords: Iterable[str] = DEFAULT_VPN_ISP_KEYWORDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.guard = DuplicateGuard(store)
        self.fingerprinter = fingerprinter or Fingerprinter()
        self.vpn_keywords = tuple(vpn_keywords)
        self._clock = clock

    def capture(
        self,
        submission: Any,
        origin: str,
        user_agent: Optional[str],
        *,
        referrer: Optional[str] = None,
    ) -> CaptureOutcome:
        attrs = normalize(submission, origin, user_agent)
        fingerprint = client_fingerprint(submission) or self.fingerprinter.generate(attrs)

        if self.guard.admit(fingerprint) is Admission.REJECTED:
            log_json(logger, logging.INFO, "capture_duplicate", id=short_id(fingerprint), stage="precheck")
            return CaptureOutcome(accepted=False, duplicate=True, fingerprint=fingerprint)

        coordinates = extract_coordinates(submission)
        location = self.resolver.resolve(attrs.origin, coordinates)
        location = attach_vpn(location, attrs, self.vpn_keywords)
        parsed_ua = parse_user_agent(attrs.user_agent, webdriver=bool(attrs.get("browser.webdriver")))

        record = DeviceRecord(
            fingerprint=fingerprint,
            attributes_version=attrs.version,
            attributes=dict(attrs.values),
            origin=attrs.origin,
            captured_at=self._clock(),
            location=location,
            user_agent=parsed_ua,
            coordinates=coordinates,
            referrer=(referrer or "").strip() or "Direct",
        )

        if self.guard.commit(record) is Admission.REJECTED:
            log_json(logger, logging.INFO, "capture_duplicate", id=short_id(fingerprint), stage="commit")
            return CaptureOutcome(accepted=False, duplicate=True, fingerprint=fingerprint)

        log_json(
            logger,
            logging.INFO,
            "capture_accepted",
            id=record.short_id,
            origin=record.origin,
            city=location.city,
            country=location.country_code,
            location_source=location.source.value if location.source else None,
            browser=parsed_ua.browser_name,
            device_class=parsed_ua.device_class.value if parsed_ua.device_class else None,
            vpn_likely=location.vpn.likely if location.vpn else False,
        )
        return CaptureOutcome(accepted=True, duplicate=False, fingerprint=fingerprint)
