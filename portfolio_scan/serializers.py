"""Django REST Framework serializers for the portfolio scan API."""

import re

from rest_framework import serializers

from .scanner import (
    MAX_ACTIVITY,
    MAX_PAGES_FULL_MODE,
    SCAN_MODE_DEFAULT,
    SCAN_MODES,
    ScanParams,
)

ADDRESS_RE = re.compile(r'^0x[0-9a-fA-F]{40}$')
HEX_QUANTITY_RE = re.compile(r'^0x[0-9a-fA-F]+$')


def validate_address(value: str) -> str:
    if not ADDRESS_RE.match(value or ''):
        raise serializers.ValidationError('Expected a 0x-prefixed 20-byte hex address')
    return value.lower()


class ScanQuerySerializer(serializers.Serializer):
    """Query parameters of GET /api/portfolio/<address>/."""
    scan_mode = serializers.ChoiceField(choices=SCAN_MODES, default=SCAN_MODE_DEFAULT)
    max_pages = serializers.IntegerField(min_value=1, max_value=MAX_PAGES_FULL_MODE, default=3)
    max_count = serializers.CharField(default='0x3e8')
    max_activity = serializers.IntegerField(min_value=1, max_value=MAX_ACTIVITY, default=100)
    activity_cursor = serializers.IntegerField(min_value=0, default=0)
    include_trades = serializers.BooleanField(default=True)
    include_prices = serializers.BooleanField(default=True)
    include_receipts = serializers.BooleanField(default=False)
    include_uri = serializers.BooleanField(default=False)
    include_metadata = serializers.BooleanField(default=False)
    metadata_limit = serializers.IntegerField(min_value=0, max_value=500, default=50)

    def validate_max_count(self, value):
        if not HEX_QUANTITY_RE.match(value):
            raise serializers.ValidationError('Expected a 0x-prefixed hex page size')
        if int(value, 16) == 0:
            raise serializers.ValidationError('Page size must be positive')
        return value.lower()

    def to_params(self, address: str) -> ScanParams:
        return ScanParams(address=address, **self.validated_data).normalized()


class ScanJobSerializer(serializers.Serializer):
    job_id = serializers.CharField(read_only=True)
    status = serializers.CharField(read_only=True)
    address = serializers.CharField(read_only=True)
    created_at = serializers.CharField(read_only=True, allow_null=True)
    started_at = serializers.CharField(read_only=True, allow_null=True)
    finished_at = serializers.CharField(read_only=True, allow_null=True)
    error = serializers.CharField(read_only=True, allow_null=True)
