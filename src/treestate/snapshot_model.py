"""
Snapshot dataclass for edit-session history.

Design Philosophy: Correct by Construction
- Immutable snapshots (frozen dataclass)
- UUID-based identity for snapshots
- No object references - the encoded tree only, so history never aliases
  the live object graph
"""

from dataclasses import dataclass
from typing import Dict, Optional
import time
import uuid

from treestate.tree import TreeNode


@dataclass(frozen=True)
class Snapshot:
    """Immutable record of the root object at one point of an edit session.

    Analogous to a git commit: parent_id links to the previous snapshot.
    """
    id: str  # UUID string
    timestamp: float
    label: str
    generation: int  # EditSession generation that produced this root
    parent_id: Optional[str]  # UUID of parent snapshot (None for the first)
    tree: TreeNode

    @classmethod
    def create(
        cls,
        label: str,
        tree: TreeNode,
        generation: int,
        parent_id: Optional[str] = None,
    ) -> 'Snapshot':
        """Create a new snapshot with auto-generated ID and timestamp."""
        return cls(
            id=str(uuid.uuid4()),
            timestamp=time.time(),
            label=label,
            generation=generation,
            parent_id=parent_id,
            tree=tree,
        )

    def to_dict(self) -> Dict:
        """Export to JSON-serializable dict."""
        return {
            'id': self.id,
            'timestamp': self.timestamp,
            'label': self.label,
            'generation': self.generation,
            'parent_id': self.parent_id,
            'tree': self.tree.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Snapshot':
        """Import from dict (e.g., loaded from JSON)."""
        return cls(
            id=data['id'],
            timestamp=data['timestamp'],
            label=data['label'],
            generation=data.get('generation', 0),
            parent_id=data['parent_id'],
            tree=TreeNode.from_dict(data['tree']),
        )
