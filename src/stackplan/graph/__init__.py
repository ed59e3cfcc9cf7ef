from stackplan.graph.builder import BuildContext, ResourceGraph, ResourceNode, build_graph
from stackplan.graph.kinds import KindRegistry, KindSpec, default_registry
from stackplan.graph.references import Ref

__all__ = [
    "BuildContext",
    "KindRegistry",
    "KindSpec",
    "Ref",
    "ResourceGraph",
    "ResourceNode",
    "build_graph",
    "default_registry",
]
