from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

# Keys every offline record carries next to the server fields
SYNCED_FIELD = '_synced'
LOCAL_UPDATED_FIELD = '_localUpdatedAt'


def _extra_fields(data: Dict[str, Any], known: tuple) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if key not in known}


def _without_bookkeeping(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if key not in (SYNCED_FIELD, LOCAL_UPDATED_FIELD)}


@dataclass
class PhotoRecord:
    """Photo model."""
    id: str
    pet_id: str
    image_data: str
    date: str
    album_id: Optional[str] = None
    thumbnail: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN = ('id', 'petId', 'imageData', 'date', 'albumId', 'thumbnail', 'description', 'createdAt')

    def to_dict(self) -> Dict[str, Any]:
        """Convert photo to dictionary."""
        data = {
            **self.extra,
            'id': self.id,
            'petId': self.pet_id,
            'imageData': self.image_data,
            'date': self.date,
            'createdAt': self.created_at
        }
        if self.album_id is not None:
            data['albumId'] = self.album_id
        if self.thumbnail is not None:
            data['thumbnail'] = self.thumbnail
        if self.description is not None:
            data['description'] = self.description
        return data

    def to_server_dict(self) -> Dict[str, Any]:
        return _without_bookkeeping(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PhotoRecord':
        """Create photo from dictionary."""
        return cls(
            id=data['id'],
            pet_id=data.get('petId', ''),
            image_data=data.get('imageData', ''),
            date=data.get('date', ''),
            album_id=data.get('albumId'),
            thumbnail=data.get('thumbnail'),
            description=data.get('description'),
            created_at=data.get('createdAt'),
            extra=_extra_fields(data, cls._KNOWN)
        )


@dataclass
class AlbumRecord:
    """Album model."""
    id: str
    pet_id: str
    name: str
    cover_photo_id: Optional[str] = None
    created_at: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN = ('id', 'petId', 'name', 'coverPhotoId', 'createdAt')

    def to_dict(self) -> Dict[str, Any]:
        """Convert album to dictionary."""
        data = {
            **self.extra,
            'id': self.id,
            'petId': self.pet_id,
            'name': self.name,
            'createdAt': self.created_at
        }
        if self.cover_photo_id is not None:
            data['coverPhotoId'] = self.cover_photo_id
        return data

    def to_server_dict(self) -> Dict[str, Any]:
        return _without_bookkeeping(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AlbumRecord':
        """Create album from dictionary."""
        return cls(
            id=data['id'],
            pet_id=data.get('petId', ''),
            name=data.get('name', ''),
            cover_photo_id=data.get('coverPhotoId'),
            created_at=data.get('createdAt'),
            extra=_extra_fields(data, cls._KNOWN)
        )


@dataclass
class OfflinePetRecord:
    """Locally held copy of a server pet profile."""
    id: str
    user_id: str
    name: str
    species: Optional[str] = None
    breed: Optional[str] = None
    age: Optional[float] = None
    weight: Optional[float] = None
    synced: bool = False
    local_updated_at: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN = ('id', 'userId', 'name', 'species', 'breed', 'age', 'weight', SYNCED_FIELD, LOCAL_UPDATED_FIELD)

    def to_dict(self) -> Dict[str, Any]:
        """Convert pet to dictionary, including profile fields this model does not name."""
        return {
            **self.extra,
            'id': self.id,
            'userId': self.user_id,
            'name': self.name,
            'species': self.species,
            'breed': self.breed,
            'age': self.age,
            'weight': self.weight,
            SYNCED_FIELD: self.synced,
            LOCAL_UPDATED_FIELD: self.local_updated_at
        }

    def to_server_dict(self) -> Dict[str, Any]:
        """Profile as the server knows it, without local bookkeeping fields."""
        data = self.to_dict()
        data.pop(SYNCED_FIELD, None)
        data.pop(LOCAL_UPDATED_FIELD, None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OfflinePetRecord':
        """Create pet from dictionary."""
        return cls(
            id=data['id'],
            user_id=data.get('userId', ''),
            name=data.get('name', ''),
            species=data.get('species'),
            breed=data.get('breed'),
            age=data.get('age'),
            weight=data.get('weight'),
            synced=bool(data.get(SYNCED_FIELD, False)),
            local_updated_at=data.get(LOCAL_UPDATED_FIELD),
            extra=_extra_fields(data, cls._KNOWN)
        )


@dataclass
class OfflineChatRecord:
    """Snapshot of a symptom chat thread."""
    id: str
    user_id: str
    messages: List[Dict[str, Any]] = field(default_factory=list)
    pet_id: Optional[str] = None
    severity: Optional[str] = None
    created_at: Optional[int] = None
    synced: bool = False
    local_updated_at: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN = ('id', 'userId', 'petId', 'messages', 'severity', 'createdAt', SYNCED_FIELD, LOCAL_UPDATED_FIELD)

    def to_dict(self) -> Dict[str, Any]:
        """Convert chat to dictionary."""
        return {
            **self.extra,
            'id': self.id,
            'userId': self.user_id,
            'petId': self.pet_id,
            'messages': self.messages,
            'severity': self.severity,
            'createdAt': self.created_at,
            SYNCED_FIELD: self.synced,
            LOCAL_UPDATED_FIELD: self.local_updated_at
        }

    def to_server_dict(self) -> Dict[str, Any]:
        data = self.to_dict()
        data.pop(SYNCED_FIELD, None)
        data.pop(LOCAL_UPDATED_FIELD, None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OfflineChatRecord':
        """Create chat from dictionary."""
        return cls(
            id=data['id'],
            user_id=data.get('userId', ''),
            messages=list(data.get('messages') or []),
            pet_id=data.get('petId'),
            severity=data.get('severity'),
            created_at=data.get('createdAt'),
            synced=bool(data.get(SYNCED_FIELD, False)),
            local_updated_at=data.get(LOCAL_UPDATED_FIELD),
            extra=_extra_fields(data, cls._KNOWN)
        )
