"""Pydantic models for Marstek cloud responses."""

from __future__ import annotations

import datetime

from pydantic import BaseModel, ConfigDict, computed_field


class CloudToken(BaseModel):
    """Session token with a computed expiry.

    The login endpoint returns a bare token; ``expire_in`` falls back to the
    configured default lifetime when the response carries none.
    """

    access_token: str
    refresh_token: str | None = None
    expire_in: float
    issued_at: datetime.datetime

    @computed_field
    @property
    def expires_at(self) -> datetime.datetime:
        return self.issued_at + datetime.timedelta(seconds=self.expire_in)

    def is_valid(self, margin: float = 0.0, now: datetime.datetime | None = None) -> bool:
        """True while ``now`` is more than ``margin`` seconds before expiry."""
        current = now or datetime.datetime.now(datetime.UTC)
        return current < self.expires_at - datetime.timedelta(seconds=margin)


class CloudDevice(BaseModel):
    """Device bound to the account, as listed by the login response.

    Example:
        {"devid": "2834958029834958023", "name": "MST_ACCP_aaaa",
         "sn": "HCOUPLE50251703184", "mac": "acd628a75a93", "type": "HMG-50"}
    """

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    devid: str
    name: str | None = None
    sn: str | None = None
    mac: str | None = None
    type: str | None = None
    bluetooth_name: str | None = None


class CloudDeviceStatus(BaseModel):
    """Telemetry record from the status endpoint.

    ``charge`` and ``discharge`` are grid-side watts, ``soc`` is percent and
    ``report_time`` the epoch second of the device's last report.
    """

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    devid: str
    name: str | None = None
    type: str | None = None
    version: str | None = None
    sn: str | None = None
    soc: float | None = None
    charge: float | None = None
    discharge: float | None = None
    load: float | None = None
    pv: float | None = None
    profit: str | None = None
    report_time: int | None = None
    status: int | None = None

    @computed_field
    @property
    def net_power(self) -> float | None:
        """Charge minus discharge; positive while the battery charges."""
        if self.charge is None or self.discharge is None:
            return None
        return self.charge - self.discharge

    @computed_field
    @property
    def reported_at(self) -> datetime.datetime | None:
        if self.report_time is None:
            return None
        return datetime.datetime.fromtimestamp(self.report_time, tz=datetime.UTC)
