"""
Error types raised to callers of the fleet simulator
"""


class FleetSimulatorError(Exception):
    """Base class for all fleet simulator errors"""


class ConfigurationError(FleetSimulatorError):
    """Invalid device configuration; the device is never created"""


class UnknownDeviceTypeError(ConfigurationError):
    """Requested device type has no simulator"""

    def __init__(self, device_type: str):
        super().__init__(f"Unknown device type: {device_type}")
        self.device_type = device_type


class UnknownTemplateError(ConfigurationError):
    """Requested generic device template is not registered"""

    def __init__(self, template: str, available=None):
        message = f"Unknown template: {template}"
        if available:
            message += f" (available: {', '.join(sorted(available))})"
        super().__init__(message)
        self.template = template


class DeviceNotFoundError(FleetSimulatorError):
    """No active virtual device with the given id"""

    def __init__(self, device_id: str):
        super().__init__(f"Device not found: {device_id}")
        self.device_id = device_id


class CommandError(FleetSimulatorError):
    """Control-surface action rejected (unsupported action or missing parameter)"""
