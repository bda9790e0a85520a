"""pvc-inspect - inspect Kubernetes persistent volume claims from a throwaway pod."""

__version__ = "0.2.0"
