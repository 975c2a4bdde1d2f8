"""
WinPower energy exporter package.

Polls UPS/PDU devices through the WinPower G2 API on a fixed cadence,
converts each poll into per-device telemetry and keeps a durable cumulative
energy total (Wh) per device for downstream monitoring.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""
