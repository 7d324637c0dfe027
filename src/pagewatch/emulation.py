# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Network/CPU/geolocation emulation presets and input models.

Pure module (pydantic only). The multipliers here scale every derived
timeout in a session: a throttled page legitimately needs longer to load
and settle than an unthrottled one.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, Field

NO_EMULATION = "No emulation"
OFFLINE = "Offline"


@dataclass(frozen=True, slots=True)
class NetworkConditions:
    """Throughput in bytes/s, latency in ms (CDP Network.emulateNetworkConditions)."""

    download: float
    upload: float
    latency: float
    offline: bool = False

    def to_cdp(self) -> dict:
        return {
            "offline": self.offline,
            "downloadThroughput": self.download,
            "uploadThroughput": self.upload,
            "latency": self.latency,
        }


PREDEFINED_NETWORK_CONDITIONS: dict[str, NetworkConditions] = {
    "Slow 3G": NetworkConditions(download=500 * 1000 / 8 * 0.8, upload=500 * 1000 / 8 * 0.8, latency=400 * 5),
    "Fast 3G": NetworkConditions(download=1.6 * 1000 * 1000 / 8 * 0.9, upload=750 * 1000 / 8 * 0.9, latency=150 * 3.75),
    "Slow 4G": NetworkConditions(download=1.6 * 1000 * 1000 / 8 * 0.9, upload=750 * 1000 / 8 * 0.9, latency=150 * 3.75),
    "Fast 4G": NetworkConditions(
        download=9 * 1000 * 1000 / 8 * 0.9, upload=1.5 * 1000 * 1000 / 8 * 0.9, latency=60 * 2.75
    ),
}

OFFLINE_CONDITIONS = NetworkConditions(download=0, upload=0, latency=0, offline=True)

_NETWORK_MULTIPLIERS = {
    "Fast 4G": 1.0,
    "Slow 4G": 2.5,
    "Fast 3G": 5.0,
    "Slow 3G": 10.0,
}


def network_multiplier(condition: str | None) -> float:
    """Timeout multiplier for a network-condition label (unknown/None → 1)."""
    if condition is None:
        return 1.0
    return _NETWORK_MULTIPLIERS.get(condition, 1.0)


def conditions_for_label(label: str) -> NetworkConditions | None:
    """Resolve a label to driver conditions. ``None`` means "clear emulation"."""
    if label == NO_EMULATION:
        return None
    if label == OFFLINE:
        return OFFLINE_CONDITIONS
    return PREDEFINED_NETWORK_CONDITIONS[label]


NetworkLabel = Literal["No emulation", "Offline", "Slow 3G", "Fast 3G", "Slow 4G", "Fast 4G"]


class GeolocationOptions(BaseModel):
    """Coordinates for a geolocation override."""

    latitude: float = Field(..., ge=-90, le=90, description="Latitude between -90 and 90")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude between -180 and 180")


class EmulationRequest(BaseModel):
    """Emulation changes for the selected page.

    Omitted fields leave the current setting unchanged. ``geolocation``
    explicitly set to ``None`` clears the override (see ``clears_geolocation``).
    """

    network_conditions: NetworkLabel | None = Field(
        None, description='Throttle network. "No emulation" disables throttling.'
    )
    cpu_throttling_rate: float | None = Field(
        None, ge=1, le=20, description="CPU slowdown factor. 1 disables throttling."
    )
    geolocation: GeolocationOptions | None = Field(None, description="Geolocation to emulate.")

    @property
    def clears_geolocation(self) -> bool:
        return "geolocation" in self.model_fields_set and self.geolocation is None
