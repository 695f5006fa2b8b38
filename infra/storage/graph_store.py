"""
块关系图存储 (Graph Store)
以 NetworkX 有向图保存块与块之间的关联（共享角色、共享地点或相互关联的事件），
并支持以 node-link JSON 格式导出与加载。
"""
import networkx as nx
import json
import os
import logging
from typing import List, Dict, Iterable

from core.schemas import ChunkAnalysis

logger = logging.getLogger(__name__)

def are_events_connected(events1: Iterable[str], events2: Iterable[str]) -> bool:
    """两组事件中任意一对存在（忽略大小写的）子串包含关系即视为关联"""
    events2 = [e.lower() for e in events2]
    for e1 in events1:
        e1 = e1.lower()
        for e2 in events2:
            if e1 in e2 or e2 in e1:
                return True
    return False

def _relation_between(source: ChunkAnalysis, target: ChunkAnalysis) -> Dict:
    """计算 source -> target 方向的关联属性，无关联时返回空字典"""
    a, b = source.chunk, target.chunk
    shared_characters = sorted(a.characters & b.characters)
    shared_locations = sorted(a.locations & b.locations)
    events_connected = are_events_connected(a.key_events, b.key_events)

    kinds = []
    if shared_characters:
        kinds.append("character")
    if shared_locations:
        kinds.append("location")
    if events_connected:
        kinds.append("event")
    if not kinds:
        return {}
    return {
        "relation": ", ".join(kinds),
        "shared_characters": shared_characters,
        "shared_locations": shared_locations,
        "events_connected": events_connected,
    }

def build_relation_graph(analyses: List[ChunkAnalysis]) -> nx.DiGraph:
    """
    构建块关系图。对每个有序块对 (A, B) 独立计算 A -> B 是否存在关联，
    因此两个方向各自成边。复杂度 O(n²)，对手稿规模（数百个块）足够。
    """
    G = nx.DiGraph()
    for analysis in analyses:
        chunk = analysis.chunk
        G.add_node(chunk.id, index=chunk.index, start=chunk.start_position, end=chunk.end_position)

    for source in analyses:
        for target in analyses:
            if source.chunk.id == target.chunk.id:
                continue
            attrs = _relation_between(source, target)
            if attrs:
                G.add_edge(source.chunk.id, target.chunk.id, **attrs)

    logger.debug(f"块关系图构建完成 (节点数: {G.number_of_nodes()}, 边数: {G.number_of_edges()})")
    return G

def get_related_chunk_ids(G: nx.DiGraph, chunk_id: str) -> List[str]:
    """返回与指定块关联的块 id，按块顺序排列"""
    if not G.has_node(chunk_id):
        return []
    return sorted(G.successors(chunk_id), key=lambda n: G.nodes[n].get("index", 0))

def get_graph_stats(G: nx.DiGraph) -> Dict:
    return {
        "node_count": G.number_of_nodes(),
        "edge_count": G.number_of_edges(),
        "density": nx.density(G) if G.number_of_nodes() > 0 else 0
    }

def save_graph(path: str, G: nx.DiGraph):
    """
    保存关系图到 JSON 文件。
    """
    data = nx.node_link_data(G)
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
    logger.info(f"关系图已保存: {path} (节点数: {G.number_of_nodes()}, 边数: {G.number_of_edges()})")

def load_graph(path: str) -> nx.DiGraph:
    """
    加载关系图。如果文件不存在，返回一个空图。
    """
    if not os.path.exists(path):
        return nx.DiGraph()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return nx.node_link_graph(data)
    except (json.JSONDecodeError, KeyError) as e:
        logger.error(f"加载关系图失败 {path}: {e}", exc_info=True)
        return nx.DiGraph()
