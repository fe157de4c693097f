"""Read-only query selectors."""

from approval_kernel.selectors.instance_selector import InstanceSelector

__all__ = ["InstanceSelector"]
