from chain_forge.utils.configuration.instance import InstanceConfig, default_ports
from chain_forge.utils.configuration.profiles import ProfileConfig, ProfilesConfig

__all__ = ["InstanceConfig", "ProfileConfig", "ProfilesConfig", "default_ports"]
