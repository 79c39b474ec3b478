from chain_forge.exceptions.base import ChainForgeError


class ConfigurationError(ChainForgeError, ValueError):
    """Generic error thrown if an instance configuration is invalid."""


class InvalidNameError(ConfigurationError):
    """An instance id or display name does not follow the naming rules.

    Names may only contain lowercase letters, digits and single hyphens,
    and must neither start nor end with a hyphen.
    """

    def __init__(self, value: str, reason: str):
        self.value = value
        self.reason = reason
        super(InvalidNameError, self).__init__(
            f"Invalid name '{value}': {reason}. Use only lowercase letters, numbers, "
            f"and hyphens (e.g., 'my-node-1')."
        )


class ProfileConfigurationError(ConfigurationError):
    """An error occurred while validating a profile of the YAML configuration file."""


class ProfileFileError(ConfigurationError):
    """There was an error while reading the YAML configuration file from disk."""
