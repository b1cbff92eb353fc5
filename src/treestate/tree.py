"""
In-memory XML-like tree.

A TreeNode is a tag, an ordered attribute mapping, an ordered child sequence
and optional text. Mapping a tree to bytes is left to the caller; to_element()
and from_element() bridge to xml.etree.ElementTree for that purpose.
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional


@dataclass
class TreeNode:
    tag: str
    attributes: Dict[str, str] = field(default_factory=dict)
    children: List['TreeNode'] = field(default_factory=list)
    text: Optional[str] = None

    def child(self, tag: str) -> Optional['TreeNode']:
        """First child with the given tag, or None."""
        for node in self.children:
            if node.tag == tag:
                return node
        return None

    def find_all(self, tag: str) -> List['TreeNode']:
        return [node for node in self.children if node.tag == tag]

    def iter(self) -> Iterator['TreeNode']:
        """Depth-first iteration over this node and its descendants."""
        yield self
        for node in self.children:
            yield from node.iter()

    def to_dict(self) -> Dict[str, Any]:
        """Export to JSON-serializable dict."""
        data: Dict[str, Any] = {'tag': self.tag}
        if self.attributes:
            data['attributes'] = dict(self.attributes)
        if self.children:
            data['children'] = [c.to_dict() for c in self.children]
        if self.text is not None:
            data['text'] = self.text
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TreeNode':
        """Import from dict (e.g., loaded from JSON)."""
        return cls(
            tag=data['tag'],
            attributes=dict(data.get('attributes', {})),
            children=[cls.from_dict(c) for c in data.get('children', [])],
            text=data.get('text'),
        )

    def to_element(self) -> ET.Element:
        element = ET.Element(self.tag, dict(self.attributes))
        element.text = self.text
        for node in self.children:
            element.append(node.to_element())
        return element

    @classmethod
    def from_element(cls, element: ET.Element) -> 'TreeNode':
        """
        Build a tree from an ElementTree element.

        Text of elements that have children is dropped (indentation); tail
        text is ignored.
        """
        children = [cls.from_element(e) for e in element]
        return cls(
            tag=element.tag,
            attributes=dict(element.attrib),
            children=children,
            text=None if children else element.text,
        )
