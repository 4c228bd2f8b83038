"""Shared fixtures: a fake Flume client and sample directory data."""

import base64
import json
from datetime import datetime
from unittest.mock import MagicMock

import pytest
import requests

from flume_exporter.client import FlumeRequestError
from flume_exporter.collector import FlumeWaterCollector
from flume_exporter.models import Device, UsageBucket

DEVICE_JSON = {
    "id": "6248148189204194987",
    "bridge_id": "6248148189204155555",
    "name": "Home",
    "type": 2,
    "user": {"email_address": "someone@example.com"},
    "location": {
        "name": "Home",
        "city": "Denver",
        "state": "CO",
        "postal_code": "80202",
        "building_type": "SINGLE_FAMILY_HOME",
        "tz": "America/Denver",
    },
}

NOW = datetime(2024, 1, 1, 10, 4, 37)


class FakeFlumeClient:
    """Stands in for FlumeClient, recording every call."""

    def __init__(self, devices=None, results=None, device_error=None, query_error=None):
        self.devices = devices if devices is not None else [Device.from_api(DEVICE_JSON)]
        self.results = results if results is not None else []
        self.device_error = device_error
        self.query_error = query_error
        self.calls = []
        self.queries = []
        self.closed = False

    def fetch_user_device(self, device_id, include_user=True, include_location=True):
        self.calls.append(("fetch_user_device", device_id, include_user, include_location))
        if self.device_error:
            raise self.device_error
        for device in self.devices:
            if device.id == device_id:
                return device
        raise FlumeRequestError(f"Device {device_id} not found")

    def fetch_user_devices(self, include_user=True, include_location=True):
        self.calls.append(("fetch_user_devices", include_user, include_location))
        if self.device_error:
            raise self.device_error
        return list(self.devices)

    def query_user_device(self, device_id, queries):
        self.queries.append((device_id, queries))
        if self.query_error:
            raise self.query_error
        return self.results

    def close(self):
        self.closed = True

    @property
    def directory_calls(self):
        return [c for c in self.calls if c[0].startswith("fetch_")]


def buckets(*pairs):
    return [UsageBucket(value=v, datetime=dt) for v, dt in pairs]


@pytest.fixture
def fake_client():
    return FakeFlumeClient()


@pytest.fixture
def make_collector():
    """Build a collector wired to a fake client and a fixed clock."""

    def _make(client, **kwargs):
        kwargs.setdefault("clock", lambda: NOW)
        return FlumeWaterCollector(
            "client-id",
            "client-secret",
            "user@example.com",
            "password",
            client_factory=lambda *args, **kw: client,
            **kwargs,
        )

    return _make


def make_token(user_id=1234):
    claims = base64.urlsafe_b64encode(json.dumps({"user_id": user_id}).encode()).decode().rstrip("=")
    return f"header.{claims}.signature"


def make_response(body, status=200):
    response = MagicMock(spec=requests.Response)
    response.status_code = status
    response.url = "https://api.flumewater.com/test"
    response.json.return_value = body
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return response


TOKEN_BODY = {"success": True, "data": [{"access_token": make_token(), "expires_in": 604800}]}
