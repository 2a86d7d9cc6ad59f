"""
Stage 2: Rights triage.

Infers license and consent from the item's path and content sample.
Items whose inference confidence is below RIGHTS_CONFIDENCE_THRESHOLD are
quarantined unless a default license is configured.
"""

import logging
import re
from typing import Any, Optional

from enliterator.core.exceptions import ItemQuarantined
from enliterator.core.models import Item
from enliterator.core.pipeline.worker import ItemStageWorker, StageContext

logger = logging.getLogger(__name__)

# Checked in order; the first match wins
LICENSE_PATTERNS: dict[str, re.Pattern] = {
    "cc0": re.compile(r"(?:CC0|Creative Commons Zero)", re.IGNORECASE),
    "cc_by_nc_nd": re.compile(r"CC[\s-]?BY[\s-]?NC[\s-]?ND", re.IGNORECASE),
    "cc_by_nc_sa": re.compile(r"CC[\s-]?BY[\s-]?NC[\s-]?SA", re.IGNORECASE),
    "cc_by_nc": re.compile(r"CC[\s-]?BY[\s-]?NC", re.IGNORECASE),
    "cc_by_nd": re.compile(r"CC[\s-]?BY[\s-]?ND", re.IGNORECASE),
    "cc_by_sa": re.compile(r"CC[\s-]?BY[\s-]?SA", re.IGNORECASE),
    "cc_by": re.compile(r"CC[\s-]?BY(?!-)", re.IGNORECASE),
    "mit": re.compile(r"\bMIT License\b|Permission is hereby granted, free of charge", re.IGNORECASE),
    "apache_2": re.compile(r"Apache License,? Version 2\.0", re.IGNORECASE),
    "public_domain": re.compile(r"public domain|no rights reserved", re.IGNORECASE),
    "proprietary": re.compile(r"all rights reserved|confidential and proprietary", re.IGNORECASE),
}

CONSENT_PATTERNS: dict[str, re.Pattern] = {
    "no_consent": re.compile(r"(?:do not|don't) (?:consent|agree|authorize)", re.IGNORECASE),
    "explicit_consent": re.compile(r"\bI (?:consent|agree|authorize|permit)\b", re.IGNORECASE),
    "implicit_consent": re.compile(r"by (?:submitting|posting|uploading)", re.IGNORECASE),
}

_COPYRIGHT = re.compile(r"(?:Copyright|©|\(c\))\s*(\d{4})?\s*([^.\n]+)", re.IGNORECASE)
_LICENSE_FILE = re.compile(r"LICEN[CS]E|COPYING|COPYRIGHT", re.IGNORECASE)
_PUBLIC_PATH = re.compile(r"(?:public|open|shared|commons)", re.IGNORECASE)
_RESTRICTED_PATH = re.compile(r"(?:private|restricted|confidential)", re.IGNORECASE)

OPEN_LICENSES = frozenset({"cc0", "public_domain", "cc_by", "cc_by_sa", "mit", "apache_2"})


class RightsInference:
    """Signal-based license and consent inference for one item."""

    def __init__(self, file_path: str, content_sample: Optional[str], media_type: str = "unknown"):
        self.file_path = file_path or ""
        self.content_sample = content_sample or ""
        self.media_type = media_type
        self.signals: dict[str, Any] = {}
        self.confidence_scores: list[float] = []

    def infer(self) -> dict[str, Any]:
        self._collect_content_signals()
        self._collect_path_signals()
        self._reconcile()

        license_type = self._license()
        consent = self._consent()
        return {
            "license": license_type,
            "consent": consent,
            "owner": (self.signals.get("copyright_notice") or {}).get("owner"),
            "confidence": self.confidence,
            "publishable": self._publishable(license_type, consent),
            "trainable": self._trainable(license_type, consent),
            "signals": self.signals,
        }

    @property
    def confidence(self) -> float:
        if not self.confidence_scores:
            return 0.0
        average = sum(self.confidence_scores) / len(self.confidence_scores)
        # Few signals are penalised
        signal_factor = min(1.0, len(self.confidence_scores) / 5.0)
        return round(average * signal_factor, 2)

    def _collect_content_signals(self) -> None:
        content = self.content_sample
        if not content:
            return

        for license_type, pattern in LICENSE_PATTERNS.items():
            if pattern.search(content):
                self.signals["content_license"] = license_type
                self.confidence_scores.append(0.7)
                break

        for consent, pattern in CONSENT_PATTERNS.items():
            if pattern.search(content):
                self.signals["content_consent"] = consent
                self.confidence_scores.append(0.6)
                break

        match = _COPYRIGHT.search(content)
        if match:
            self.signals["copyright_notice"] = {
                "year": match.group(1),
                "owner": match.group(2).strip() if match.group(2) else None,
            }
            self.confidence_scores.append(0.75)

    def _collect_path_signals(self) -> None:
        if _LICENSE_FILE.search(self.file_path):
            self.signals["path_license_file"] = True
            self.confidence_scores.append(0.8)
        if _PUBLIC_PATH.search(self.file_path):
            self.signals["path_public"] = True
            self.confidence_scores.append(0.5)
        if _RESTRICTED_PATH.search(self.file_path):
            self.signals["path_restricted"] = True
            self.confidence_scores.append(0.6)

    def _reconcile(self) -> None:
        if self.signals.get("path_restricted") and self.signals.get("path_public"):
            self.confidence_scores = [score * 0.7 for score in self.confidence_scores]
        license_signals = sum(1 for key in self.signals if "license" in key)
        if license_signals > 1:
            self.confidence_scores.append(0.85)

    def _license(self) -> str:
        if "content_license" in self.signals:
            return self.signals["content_license"]
        if "copyright_notice" in self.signals:
            return "proprietary"
        return "unspecified"

    def _consent(self) -> str:
        if "content_consent" in self.signals:
            return self.signals["content_consent"]
        if self.signals.get("path_restricted"):
            return "no_consent"
        return "unknown"

    def _publishable(self, license_type: str, consent: str) -> bool:
        if license_type == "proprietary" or consent == "no_consent":
            return False
        return license_type in OPEN_LICENSES or consent == "explicit_consent"

    def _trainable(self, license_type: str, consent: str) -> bool:
        if consent == "no_consent" or license_type in ("cc_by_nc_nd", "proprietary"):
            return False
        return True


class RightsWorker(ItemStageWorker):
    """Rights assignment and quarantine."""

    async def process_item(self, ctx: StageContext, item: Item) -> Optional[dict[str, Any]]:
        rights = RightsInference(item.file_path, item.content_sample, item.media_type).infer()
        threshold = ctx.settings.RIGHTS_CONFIDENCE_THRESHOLD

        if rights["confidence"] >= threshold:
            return {**rights, "license_source": "inferred"}

        default_license = ctx.settings.RIGHTS_DEFAULT_LICENSE
        if default_license:
            return {
                **rights,
                "license": default_license,
                "license_source": "default",
                "publishable": default_license in OPEN_LICENSES,
            }

        logger.warning(f"Quarantined item {item.id}: {item.file_path}")
        raise ItemQuarantined(
            f"Low confidence rights inference: {rights['confidence']}",
            metadata=rights,
        )
