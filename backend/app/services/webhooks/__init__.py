"""Billing webhook ingestion."""
from .billing_events import BillingEvent, BillingEventProcessor, BillingEventType, parse_timestamp

__all__ = ["BillingEvent", "BillingEventProcessor", "BillingEventType", "parse_timestamp"]
