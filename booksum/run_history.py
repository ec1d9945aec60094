"""
Run history: completed and partial summaries, kept in a JSON file.

Records use the same camelCase keys as the export files written by the
browser version of the app, so backups can be moved between the two.
"""

import json
import logging
import os
import tempfile
import time
import uuid
from dataclasses import dataclass

from booksum import config
from booksum.errors import BackupFormatError

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("id", "timestamp", "fileName", "summary")


def now_ms():
    return int(time.time() * 1000)


def new_record_id():
    return f"{now_ms()}{uuid.uuid4().hex[:5]}"


@dataclass(frozen=True)
class RunRecord:
    id: str
    timestamp: int
    file_name: str
    language: str
    summary: str
    model: str
    token_usage: int = 0
    partial: bool = False

    @classmethod
    def create(cls, file_name, language, summary, model, token_usage, partial=False):
        return cls(id=new_record_id(), timestamp=now_ms(), file_name=file_name, language=language,
                   summary=summary, model=model, token_usage=token_usage, partial=partial)

    @property
    def display_name(self):
        return f"{self.file_name} (PARTIAL)" if self.partial else self.file_name

    def to_dict(self):
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "fileName": self.file_name,
            "language": self.language,
            "summary": self.summary,
            "model": self.model,
            "tokenUsage": self.token_usage,
            "partial": self.partial,
        }

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise BackupFormatError(f"History item must be an object, got {type(data).__name__}")
        missing = [key for key in REQUIRED_KEYS if key not in data]
        if missing:
            raise BackupFormatError(f"History item is missing {', '.join(missing)}")
        try:
            return cls(
                id=str(data["id"]),
                timestamp=int(data["timestamp"]),
                file_name=str(data["fileName"]),
                language=str(data.get("language", "")),
                summary=str(data["summary"]),
                model=str(data.get("model", "")),
                token_usage=int(data.get("tokenUsage") or 0),
                partial=bool(data.get("partial", False)),
            )
        except (TypeError, ValueError) as e:
            raise BackupFormatError(f"Invalid history item {data.get('id')!r}: {e}") from e


def merge_records(existing, imported):
    """
    Union keyed by id. Existing records win over imported ones with the same
    id. Returns (merged list sorted newest first, number of records added).
    """
    known_ids = {record.id for record in existing}
    added = []
    for record in imported:
        if record.id not in known_ids:
            known_ids.add(record.id)
            added.append(record)
    merged = sorted([*existing, *added], key=lambda r: r.timestamp, reverse=True)
    return merged, len(added)


def parse_backup(data):
    """Validates a backup document and returns its records."""
    if not isinstance(data, dict):
        raise BackupFormatError("Backup must be a JSON object")
    version = data.get("version")
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise BackupFormatError(f"Backup has an invalid version field: {version!r}")
    if version > config.BACKUP_VERSION:
        raise BackupFormatError(f"Backup version {version} is newer than supported ({config.BACKUP_VERSION})")
    items = data.get("items")
    if not isinstance(items, list):
        raise BackupFormatError("Backup 'items' must be a list")
    return [RunRecord.from_dict(item) for item in items]


def write_json_atomic(file_path, data):
    directory = os.path.dirname(os.path.abspath(file_path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=4, ensure_ascii=False)
        os.replace(tmp_path, file_path)
    except BaseException:
        os.unlink(tmp_path)
        raise


class RunRecorder:
    """JSON-file backed history. The whole list is rewritten on every change."""

    def __init__(self, file_path=config.HISTORY_FILE_PATH):
        self.file_path = file_path
        self._records = self._load()

    def _load(self):
        if not os.path.exists(self.file_path):
            return []
        with open(self.file_path, 'r', encoding='utf-8') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise BackupFormatError(f"History file '{self.file_path}' is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise BackupFormatError(f"History file '{self.file_path}' must contain a list")
        records = [RunRecord.from_dict(item) for item in data]
        logger.debug("Loaded %d history records from %s", len(records), self.file_path)
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    def _save(self):
        write_json_atomic(self.file_path, [record.to_dict() for record in self._records])

    def save(self, record):
        self._records.insert(0, record)
        self._records.sort(key=lambda r: r.timestamp, reverse=True)
        self._save()

    def list(self):
        return list(self._records)

    def get(self, record_id):
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def delete(self, record_id):
        remaining = [r for r in self._records if r.id != record_id]
        if len(remaining) == len(self._records):
            return False
        self._records = remaining
        self._save()
        return True

    def merge(self, records):
        self._records, added = merge_records(self._records, records)
        if added:
            self._save()
        return added

    def export_backup(self, file_path):
        backup = {
            "version": config.BACKUP_VERSION,
            "createdAt": now_ms(),
            "items": [record.to_dict() for record in self._records],
        }
        write_json_atomic(file_path, backup)
        return len(self._records)

    def import_backup(self, file_path):
        with open(file_path, 'r', encoding='utf-8') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise BackupFormatError(f"Backup '{file_path}' is not valid JSON: {e}") from e
        return self.merge(parse_backup(data))
