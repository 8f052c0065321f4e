"""Read tools: pure graph queries the model may call freely.

Each tool validates its arguments against a pydantic model before running and
returns plain JSON-serializable data. Lookups that find nothing return an
``{"error": ...}`` value rather than raising.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from api.tools.base import ToolContext, ToolSpec
from libs.graph.models import Direction, summarize_handles, truncate

BUILT_IN_NODE_TYPES: List[Dict[str, str]] = [
    {"_key": "starter", "displayName": "Starter", "description": "Workflow entry point", "category": "built-in"},
    {"_key": "return", "displayName": "Return", "description": "Workflow exit point", "category": "built-in"},
    {"_key": "html", "displayName": "Html Editor", "description": "WYSIWYG HTML editor", "category": "built-in"},
    {"_key": "entryType", "displayName": "Entry Data Type", "description": "Data entry form", "category": "built-in"},
]


class ReadGraphOverviewArgs(BaseModel):
    graphKey: Optional[str] = Field(default=None, description="Key of the graph (defaults to the current graph)")


class SearchNodesArgs(BaseModel):
    query: str = Field(description="Search text")
    sheetId: Optional[str] = Field(default=None, description="Only return nodes of this sheet")
    maxResults: int = Field(default=10, ge=1, le=50, description="Maximum number of results")


class ExploreNeighborhoodArgs(BaseModel):
    nodeKey: str = Field(description="Key of the starting node")
    maxDepth: int = Field(default=2, ge=1, le=3, description="Maximum traversal depth")
    direction: Direction = Field(default="any", description="Edge direction to follow")


class ReadNodeDetailArgs(BaseModel):
    nodeKey: str = Field(description="Key of the node")


class ReadNodeConfigArgs(BaseModel):
    typeKey: str = Field(description="Key of the node type config")


class ListNodeTypesArgs(BaseModel):
    pass


class ListNodeEdgesArgs(BaseModel):
    nodeKey: str = Field(description="Key of the node")
    direction: Direction = Field(default="any", description="inbound, outbound or any")


def _edge_view(edge) -> Dict[str, Any]:
    return {
        "_key": edge.key,
        "source": edge.source,
        "sourceHandle": edge.source_handle,
        "target": edge.target,
        "targetHandle": edge.target_handle,
        "label": edge.label,
    }


async def read_graph_overview(args: ReadGraphOverviewArgs, ctx: ToolContext) -> Any:
    # Always the bound graph: a thread never reads another tenant's graph
    graph = await ctx.data_source.get_graph(ctx.graph_key)
    if graph is None:
        return {"error": "Graph not found"}

    nodes = await ctx.data_source.get_nodes(ctx.graph_key)
    edges = await ctx.data_source.get_edges(ctx.graph_key)

    return {
        "name": graph.name,
        "description": graph.description,
        "sheets": [
            {
                "id": sheet_id,
                "name": name,
                "nodeCount": sum(1 for n in nodes if n.sheet == sheet_id),
                "edgeCount": sum(1 for e in edges if e.sheet == sheet_id),
            }
            for sheet_id, name in graph.sheets.items()
        ],
        "metadata": graph.metadata,
    }


async def search_nodes(args: SearchNodesArgs, ctx: ToolContext) -> Any:
    results = await ctx.data_source.search_nodes(ctx.graph_key, args.query, args.maxResults)
    if args.sheetId:
        results = [node for node in results if node.sheet == args.sheetId]

    return [
        {
            "_key": node.key,
            "type": node.type,
            "sheet": node.sheet,
            "process": truncate(node.process, 200),
            "dataSummary": truncate(json.dumps(node.data, default=str), 200) if node.data is not None else None,
        }
        for node in results
    ]


async def explore_neighborhood(args: ExploreNeighborhoodArgs, ctx: ToolContext) -> Any:
    result = await ctx.data_source.get_neighborhood(
        ctx.graph_key, args.nodeKey, args.maxDepth, args.direction
    )
    return {
        "nodes": [
            {
                "_key": node.key,
                "type": node.type,
                "sheet": node.sheet,
                "process": truncate(node.process, 300),
            }
            for node in result.nodes
        ],
        "edges": [_edge_view(edge) for edge in result.edges],
    }


async def read_node_detail(args: ReadNodeDetailArgs, ctx: ToolContext) -> Any:
    node = await ctx.data_source.get_node_by_key(ctx.graph_key, args.nodeKey)
    if node is None:
        return {"error": "Node not found"}

    configs = await ctx.data_source.get_node_configs(ctx.graph_key)
    type_name = next((c.display_name for c in configs if c.key == node.type), None)

    return {
        "_key": node.key,
        "type": node.type,
        "typeName": type_name,
        "sheet": node.sheet,
        "posX": node.pos_x,
        "posY": node.pos_y,
        "size": node.size,
        "process": node.process,
        "handles": summarize_handles(node.handles),
        "data": truncate(json.dumps(node.data, default=str), 500) if node.data is not None else None,
    }


async def read_node_config(args: ReadNodeConfigArgs, ctx: ToolContext) -> Any:
    configs = await ctx.data_source.get_node_configs(ctx.graph_key)
    config = next((c for c in configs if c.key == args.typeKey), None)
    if config is None:
        return {"error": "NodeTypeConfig not found"}

    return {
        "_key": config.key,
        "displayName": config.display_name,
        "description": config.description,
        "category": config.category,
        "icon": config.icon,
        "handles": summarize_handles(config.handles),
    }


async def list_available_node_types(args: ListNodeTypesArgs, ctx: ToolContext) -> Any:
    configs = await ctx.data_source.get_node_configs(ctx.graph_key)
    return BUILT_IN_NODE_TYPES + [
        {
            "_key": c.key,
            "displayName": c.display_name,
            "description": c.description,
            "category": c.category,
            "icon": c.icon,
        }
        for c in configs
    ]


async def list_node_edges(args: ListNodeEdgesArgs, ctx: ToolContext) -> Any:
    edges = await ctx.data_source.get_edges(ctx.graph_key)

    seen = set()
    matched = []
    for edge in edges:
        if args.direction == "outbound":
            hit = edge.source == args.nodeKey
        elif args.direction == "inbound":
            hit = edge.target == args.nodeKey
        else:
            hit = args.nodeKey in (edge.source, edge.target)
        if hit and edge.key not in seen:
            seen.add(edge.key)
            matched.append(_edge_view(edge))
    return matched


READ_TOOLS: List[ToolSpec] = [
    ToolSpec(
        name="read_graph_overview",
        description="Get the current graph's metadata: name, description, sheets and node/edge counts per sheet.",
        args_schema=ReadGraphOverviewArgs,
        executor=read_graph_overview,
    ),
    ToolSpec(
        name="search_nodes",
        description="Search nodes by text across keys, types, process code and data.",
        args_schema=SearchNodesArgs,
        executor=search_nodes,
    ),
    ToolSpec(
        name="explore_neighborhood",
        description="Explore the nodes and edges around a node, up to 3 hops, following edges in a given direction.",
        args_schema=ExploreNeighborhoodArgs,
        executor=explore_neighborhood,
    ),
    ToolSpec(
        name="read_node_detail",
        description="Read the full detail of one node: position, size, process code, handles and data.",
        args_schema=ReadNodeDetailArgs,
        executor=read_node_detail,
    ),
    ToolSpec(
        name="read_node_config",
        description="Read the configuration of a node type: display name, description, category and handles.",
        args_schema=ReadNodeConfigArgs,
        executor=read_node_config,
    ),
    ToolSpec(
        name="list_available_node_types",
        description="List every node type that can be created, built-in and custom.",
        args_schema=ListNodeTypesArgs,
        executor=list_available_node_types,
    ),
    ToolSpec(
        name="list_node_edges",
        description="List the edges connected to a node, filtered by direction.",
        args_schema=ListNodeEdgesArgs,
        executor=list_node_edges,
    ),
]
