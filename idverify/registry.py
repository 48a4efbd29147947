"""
Student Registry
----------------
Read-only map from 7-digit student IDs to student records. A registry is
loaded once, either from a JSON file or from a Firestore collection, and
never mutated while a verification session runs.
"""

import json
import logging
from dataclasses import dataclass

import firebase_admin
from firebase_admin import credentials, firestore

from idverify.errors import RegistryError

logger = logging.getLogger(__name__)

ID_LENGTH = 7


@dataclass(frozen=True)
class StudentRecord:
    """One registered student."""

    student_id: str
    name: str
    department: str
    year: str
    face_image: str
    email: str = ""

    @classmethod
    def from_dict(cls, student_id, data):
        """Build a record from a registry entry, accepting camelCase or snake_case field names."""
        try:
            return cls(
                student_id=str(data.get('id', student_id)),
                name=data['name'],
                department=data.get('department', ''),
                year=str(data.get('year', '')),
                face_image=data.get('faceImage') or data['face_image'],
                email=data.get('email', ''),
            )
        except KeyError as e:
            raise RegistryError(f"Student {student_id} is missing field {e}") from e


def is_well_formed_id(student_id, id_length=ID_LENGTH):
    return isinstance(student_id, str) and len(student_id) == id_length and student_id.isdigit()


def initialize_firebase(config):
    """Initialize the Firebase app once (no-op when already initialized)."""
    if firebase_admin._apps:
        return firebase_admin.get_app()

    if not config.get("firebase_credentials"):
        raise RegistryError("firebase_credentials is not configured")

    cred = credentials.Certificate(config["firebase_credentials"])
    options = {}
    if config.get("storage_bucket"):
        options['storageBucket'] = config["storage_bucket"]
    return firebase_admin.initialize_app(cred, options)


class StudentRegistry:
    """Read-only lookup of student records by ID."""

    def __init__(self, records, id_length=ID_LENGTH):
        self._records = {}
        for record in records:
            if not is_well_formed_id(record.student_id, id_length):
                raise RegistryError(
                    f"Student ID {record.student_id!r} is not a {id_length}-digit string"
                )
            if record.student_id in self._records:
                raise RegistryError(f"Duplicate student ID {record.student_id}")
            self._records[record.student_id] = record
        self._valid_ids = tuple(self._records)
        logger.info(f"Registry loaded with {len(self._records)} students")

    @classmethod
    def from_mapping(cls, mapping, id_length=ID_LENGTH):
        """Build from {student_id: {name, department, ...}}."""
        return cls(
            [StudentRecord.from_dict(student_id, data) for student_id, data in mapping.items()],
            id_length=id_length,
        )

    @classmethod
    def from_json(cls, path, id_length=ID_LENGTH):
        """Load from a JSON file holding either a mapping or a list of students."""
        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise RegistryError(f"Cannot read registry {path}: {e}") from e

        if isinstance(data, list):
            data = {str(entry.get('id', '')): entry for entry in data}
        if not isinstance(data, dict):
            raise RegistryError(f"Registry {path} must hold an object or a list")
        return cls.from_mapping(data, id_length=id_length)

    @classmethod
    def from_firestore(cls, config, client=None):
        """Load every document of the configured Firestore collection."""
        if client is None:
            initialize_firebase(config)
            client = firestore.client()

        collection = config.get("firestore_collection", "students")
        logger.info(f"Loading students from Firestore collection '{collection}'")
        try:
            documents = list(client.collection(collection).stream())
        except Exception as e:
            raise RegistryError(f"Cannot read Firestore collection {collection}: {e}") from e

        return cls.from_mapping(
            {doc.id: doc.to_dict() for doc in documents},
            id_length=config.get("id_length", ID_LENGTH),
        )

    @classmethod
    def from_config(cls, config):
        if config["registry_source"] == "firestore":
            return cls.from_firestore(config)
        return cls.from_json(config["registry_path"], id_length=config.get("id_length", ID_LENGTH))

    def lookup(self, student_id):
        """Return the StudentRecord for student_id, or None when not registered."""
        record = self._records.get(student_id)
        if record is None:
            logger.warning(f"Student ID {student_id} not found in registry")
        return record

    def is_valid_id(self, student_id):
        return student_id in self._records

    def valid_ids(self):
        """All registered IDs in load order."""
        return self._valid_ids

    def face_image_path(self, student_id):
        record = self._records.get(student_id)
        return record.face_image if record else None

    def __contains__(self, student_id):
        return student_id in self._records

    def __len__(self):
        return len(self._records)
