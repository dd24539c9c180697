"""
Clustering methods registry and factory.
"""

from .base import CLUSTERING_FEATURES, ClusteringMethod, ClusteringResult, ModelComponents
from .kmeans import KMeansMethod, denormalize, normalize

# Registry of available methods
METHOD_REGISTRY = {
    "kmeans": KMeansMethod,
}


def get_method(method_name: str, config: dict) -> ClusteringMethod:
    """Factory to create a clustering method

    Args:
        method_name: Name of the method (e.g., 'kmeans')
        config: Configuration dict for the method

    Returns:
        Instance of the clustering method

    Raises:
        ValueError: If method_name is not registered
    """
    if method_name not in METHOD_REGISTRY:
        available = ", ".join(METHOD_REGISTRY.keys())
        raise ValueError(f"Unknown method '{method_name}'. Available methods: {available}")

    method_class = METHOD_REGISTRY[method_name]
    return method_class(config)


def list_methods() -> list[str]:
    """List all available clustering methods"""
    return list(METHOD_REGISTRY.keys())


__all__ = [
    "CLUSTERING_FEATURES",
    "ClusteringMethod",
    "ClusteringResult",
    "ModelComponents",
    "KMeansMethod",
    "denormalize",
    "get_method",
    "list_methods",
    "normalize",
]
