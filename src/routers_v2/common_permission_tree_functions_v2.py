# Permission Tree V2 - Recursive collection of the permission hierarchy (site -> subsites/lists -> items)
# Quick scan only follows unique sub-containers and keeps unique items; full scan keeps everything

import logging
from enum import Enum
from typing import Callable, Optional, TypeVar, Union

from hardcoded_config import ANALYZER_HARDCODED_CONFIG
from routers_v2.common_analyzer_models_v2 import NodeKind, PermissionEntry, PermissionMatrix, PermissionNode, utc_now_iso
from routers_v2.common_permission_source_v2 import PermissionSource, SourceContainer, SourceItem, SourceResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

class ScanPolicy(str, Enum):
  QUICK = "quick"
  FULL = "full"

def _call_directly(remote_call: Callable[[], T], operation_name: str) -> T:
  return remote_call()

def _log_warning(message: str) -> None:
  logger.warning(f"WARNING: {message}")

def get_url_key(url: str) -> str:
  return (url or "").rstrip("/").lower()


class PermissionTreeCollector:
  """
  Walks a site and builds a PermissionNode tree plus totals.

  Usage:
    collector = PermissionTreeCollector(source, call=context.call, warn=context.warn)
    matrix = collector.collect(site_container, ScanPolicy.QUICK)
    matrix.total_items, matrix.unique_permissions, matrix.total_principals

  A denied lookup on one node keeps the node with an empty permission list and logs a warning.
  Raised errors (fatal or exhausted retries) propagate to the caller.
  """

  def __init__(
    self,
    source: PermissionSource,
    call: Callable[[Callable[[], T], str], T] = _call_directly,
    warn: Callable[[str], None] = _log_warning,
    ignored_permission_levels: Optional[list[str]] = None
  ):
    self.source = source
    self._call = call
    self._warn = warn
    self.ignored_permission_levels = set(ignored_permission_levels if ignored_permission_levels is not None else ANALYZER_HARDCODED_CONFIG.IGNORED_PERMISSION_LEVELS)
    self._reset_counters()

  def _reset_counters(self) -> None:
    self.total_items = 0
    self.unique_permissions = 0
    self.principals: set[str] = set()
    self._visited_webs: set[str] = set()

  def collect(self, root_scope: SourceContainer, scan_policy: ScanPolicy) -> PermissionMatrix:
    scan_policy = ScanPolicy(scan_policy)
    self._reset_counters()

    root_node = PermissionNode(title=root_scope.title, kind=NodeKind.CONTAINER_ROOT, node_type=root_scope.node_type, url=root_scope.url, permissions=self._get_permissions(root_scope))
    self._count_node(root_node)
    self._visited_webs.add(get_url_key(root_scope.url))
    self._collect_children(root_scope, root_node, scan_policy)

    return PermissionMatrix(
      root=root_node,
      total_items=self.total_items,
      unique_permissions=self.unique_permissions,
      total_principals=len(self.principals),
      scan_type=scan_policy.value,
      completed_utc=utc_now_iso()
    )

  def _collect_children(self, container: SourceContainer, parent_node: PermissionNode, scan_policy: ScanPolicy) -> None:
    children = self._get_list(self.source.list_child_containers, container, "list_child_containers")
    for child in children:
      if child.is_web:
        url_key = get_url_key(child.url)
        if url_key in self._visited_webs:
          self._warn(f"Subsite '{child.url}' already visited, skipping.")
          continue
        self._visited_webs.add(url_key)
        child_node = self._create_node(child, NodeKind.CONTAINER)
        parent_node.children.append(child_node)
        self._collect_children(child, child_node, scan_policy)
        continue

      child_node = self._create_node(child, NodeKind.SUB_CONTAINER)
      parent_node.children.append(child_node)
      if scan_policy == ScanPolicy.QUICK and not child.has_unique_permissions: continue

      items = self._get_list(self.source.list_items, child, "list_items")
      for item in items:
        if scan_policy == ScanPolicy.QUICK and not item.has_unique_permissions: continue
        child_node.children.append(self._create_node(item, NodeKind.ITEM))

  def _create_node(self, obj: Union[SourceContainer, SourceItem], kind: NodeKind) -> PermissionNode:
    """Non-root nodes record assignments only when they break inheritance."""
    permissions = self._get_permissions(obj) if obj.has_unique_permissions else []
    node = PermissionNode(title=obj.title, kind=kind, node_type=obj.node_type, url=obj.url, permissions=permissions)
    self._count_node(node)
    return node

  def _count_node(self, node: PermissionNode) -> None:
    self.total_items += 1
    if node.permissions: self.unique_permissions += 1
    for entry in node.permissions: self.principals.add(entry.principal)

  def _get_permissions(self, obj: Union[SourceContainer, SourceItem]) -> list[PermissionEntry]:
    result: SourceResult = self._call(lambda: self.source.get_role_assignments(obj), "get_role_assignments")
    if not result.ok:
      self._warn(f"Permissions of '{obj.url}' could not be read -> {result.reason}")
      return []
    return [PermissionEntry(principal=b.principal, role=b.role_name) for b in (result.value or []) if b.role_name not in self.ignored_permission_levels]

  def _get_list(self, method: Callable[[SourceContainer], SourceResult], container: SourceContainer, operation_name: str) -> list:
    result: SourceResult = self._call(lambda: method(container), operation_name)
    if not result.ok:
      self._warn(f"{operation_name} on '{container.url}' denied -> {result.reason}")
      return []
    return list(result.value or [])
