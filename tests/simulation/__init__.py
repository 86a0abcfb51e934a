"""
Helpers for driving simulated devices in tests without a broker.

Provides:
- make_device: Build and optionally start a simulator on a loopback transport
- Failure scenarios: Short-duration variants of the predefined scenarios
"""
