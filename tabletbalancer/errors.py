"""Exceptions raised by the balancer."""


class BalancerError(Exception):
    """Base class for balancer errors."""


class ConfigurationError(BalancerError):
    """Invalid balancer options."""


class DispatchError(BalancerError):
    """A replica change could not be handed to the control plane."""
    
    def __init__(self, tablet_id: str, message: str):
        super().__init__(f"{tablet_id}: {message}")
        self.tablet_id = tablet_id
        self.message = message


class UnknownEntityError(BalancerError):
    """Catalog lookup for a table, tablet or server failed."""
