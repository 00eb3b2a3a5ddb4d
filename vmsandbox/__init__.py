"""Building blocks for running container sandboxes inside cloud-hypervisor VMs."""

__version__ = "0.1.0"