"""
Plain value types shared by the registry, the store and the backfill jobs.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

WILDCARD = '*'


@dataclass(frozen=True)
class RelationshipTypeDef:
    """In-memory form of a RelationshipType row"""
    name: str
    source_types: frozenset
    target_types: frozenset
    display_name: str = ''
    description: str = ''
    is_bidirectional: bool = False
    reverse_type_name: Optional[str] = None
    default_strength: int = 1
    is_system: bool = False
    color: str = ''
    icon: str = ''

    @property
    def is_symmetric(self):
        return self.is_bidirectional and self.reverse_type_name == self.name

    def allows_source(self, kind):
        return WILDCARD in self.source_types or kind in self.source_types

    def allows_target(self, kind):
        return WILDCARD in self.target_types or kind in self.target_types

    @classmethod
    def from_dict(cls, data):
        return cls(
            name=data['name'],
            display_name=data.get('display_name', ''),
            description=data.get('description', ''),
            source_types=frozenset(data.get('source_types') or []),
            target_types=frozenset(data.get('target_types') or []),
            is_bidirectional=bool(data.get('is_bidirectional', False)),
            reverse_type_name=data.get('reverse_type_name') or None,
            default_strength=int(data.get('default_strength', 1)),
            is_system=bool(data.get('is_system', False)),
            color=data.get('color', ''),
            icon=data.get('icon', ''),
        )

    def to_dict(self):
        return {
            'name': self.name,
            'display_name': self.display_name,
            'description': self.description,
            'source_types': sorted(self.source_types),
            'target_types': sorted(self.target_types),
            'is_bidirectional': self.is_bidirectional,
            'reverse_type_name': self.reverse_type_name,
            'default_strength': self.default_strength,
            'is_system': self.is_system,
            'color': self.color,
            'icon': self.icon,
        }


@dataclass
class NewEdgeRequest:
    """Everything a caller may supply when establishing a relationship"""
    relationship_type: str
    source_type: str
    source_id: str
    target_type: str
    target_id: str
    strength: Optional[int] = None
    metadata: dict = field(default_factory=dict)
    tags: list = field(default_factory=list)
    priority: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    tenant_id: Optional[str] = None

    def __post_init__(self):
        self.source_id = str(self.source_id)
        self.target_id = str(self.target_id)
        if self.strength is not None and not 1 <= int(self.strength) <= 5:
            raise ValueError(f"Relationship strength must be between 1 and 5, got {self.strength}")
        self.metadata = dict(self.metadata or {})
        self.tags = list(dict.fromkeys(self.tags or []))

    @property
    def natural_key(self):
        return (self.source_type, self.source_id, self.target_type, self.target_id, self.relationship_type)

    def natural_key_filter(self):
        return {
            'source_type': self.source_type,
            'source_id': self.source_id,
            'target_type': self.target_type,
            'target_id': self.target_id,
            'relationship_type': self.relationship_type,
        }

    def mirrored(self, reverse_type_name):
        """Same payload pointing the other way"""
        return replace(
            self,
            relationship_type=reverse_type_name,
            source_type=self.target_type,
            source_id=self.target_id,
            target_type=self.source_type,
            target_id=self.source_id,
            metadata=dict(self.metadata),
            tags=list(self.tags),
        )

    def __str__(self):
        return '|'.join(self.natural_key)
