"""Exception types raised by the firmware codec and its front ends."""


class FirmwareError(Exception):
    """Base class for all codec errors."""


class ConfigError(FirmwareError):
    """Device identity cannot be resolved, or a device definition is invalid."""


class MissingInputError(FirmwareError):
    """A mandatory part (kernel, initrd) has no source content."""


class ValidationError(FirmwareError):
    """One or more parts failed a magic-byte or checksum check."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class SignatureNotFoundError(FirmwareError):
    """No identity block marker in the header window of an image."""


class AmbiguousDeviceError(FirmwareError):
    """More than one registered device matches an identity tuple."""

    def __init__(self, candidates: list[str]):
        self.candidates = list(candidates)
        super().__init__(
            f"identity matches several devices: {', '.join(self.candidates)}"
        )
