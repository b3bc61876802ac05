"""
Node discovery.

Walks the remote address space depth-first from a root container, following
browse continuation points until every page of every container has been read.
Variables are collected, objects and object types are descended into.
"""
import logging
from typing import Callable, List, Optional

from common.errors import DiscoveryError
from common.models import VariableNode, split_numeric_node_id
from ingest_agent.remote import OBJECT, OBJECT_TYPE, VARIABLE, Reference

logger = logging.getLogger(__name__)

NodeFilter = Callable[[str], bool]


def namespace_range_filter(namespace: int, id_min: int, id_max: int) -> NodeFilter:
    """Accept `ns=<namespace>;i=<id>` node ids with id_min <= id <= id_max."""

    def include(node_id: str) -> bool:
        parts = split_numeric_node_id(node_id)
        if parts is None:
            return False
        ns, identifier = parts
        return ns == namespace and id_min <= identifier <= id_max

    return include


async def browse_all(session, node_id: str, page_size: int = 0) -> List[Reference]:
    """Every child reference of one container, across all continuation pages."""
    page = await session.browse(node_id, page_size)
    references = list(page.references)
    while page.continuation:
        page = await session.browse_next(page.continuation)
        references.extend(page.references)
    return references


async def discover(
    session,
    root: str,
    include: Optional[NodeFilter] = None,
    page_size: int = 0,
) -> List[VariableNode]:
    """
    Discover the variable nodes below `root`.

    Returns nodes in traversal order without duplicates. Any remote failure is
    raised as DiscoveryError; there is no partial result.
    """
    found: List[VariableNode] = []
    seen_variables = set()
    visited = {root}
    stack = [root]
    containers = 0

    while stack:
        parent = stack.pop()
        containers += 1
        try:
            references = await browse_all(session, parent, page_size)
        except Exception as e:
            raise DiscoveryError(f"Browsing {parent} failed: {e}") from e

        children = []
        for ref in references:
            if ref.node_class == VARIABLE:
                if ref.node_id in seen_variables:
                    continue
                seen_variables.add(ref.node_id)
                if include is None or include(ref.node_id):
                    found.append(VariableNode(node_id=ref.node_id, name=ref.name))
            elif ref.node_class in (OBJECT, OBJECT_TYPE) and ref.node_id not in visited:
                visited.add(ref.node_id)
                children.append(ref.node_id)
        # First child on top of the stack.
        stack.extend(reversed(children))

    logger.info(f"Discovery browsed {containers} containers, found {len(found)} matching variables")
    return found
