"""
JSON document storage for the club site.

Each collection lives in <data_dir>/<name>.json as {"next_id": N, "items": [...]}.
A bare list (the older layout) is still read and is rewritten in the new
layout on the next write.
"""

import json
import logging
import os
import shutil
import tempfile
import threading
from datetime import datetime

logger = logging.getLogger(__name__)

# Thread lock per file for read-check-write sequences
_file_locks = {}
_file_locks_lock = threading.Lock()
_MAX_FILE_LOCKS = 100  # Prevent unbounded memory growth


def get_file_lock(filepath):
    """Get or create a lock for a specific file"""
    with _file_locks_lock:
        if filepath not in _file_locks:
            if len(_file_locks) >= _MAX_FILE_LOCKS:
                # Drop locks nobody is holding until we are back under half the cap
                to_remove = []
                for path, lock in list(_file_locks.items()):
                    if not lock.locked():
                        to_remove.append(path)
                        if len(_file_locks) - len(to_remove) < _MAX_FILE_LOCKS // 2:
                            break
                for path in to_remove:
                    del _file_locks[path]
            _file_locks[filepath] = threading.Lock()
        return _file_locks[filepath]


def _read_json_no_lock(filepath, default):
    if not os.path.exists(filepath):
        return default
    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        logger.error(f"Failed to read JSON from {filepath}: {e}")
        backup_path = filepath + '.backup'
        if os.path.exists(backup_path):
            logger.info(f"Attempting to recover from backup: {backup_path}")
            try:
                with open(backup_path, 'r', encoding='utf-8') as f:
                    return json.load(f)
            except (json.JSONDecodeError, IOError) as backup_error:
                logger.error(f"Backup {backup_path} is unreadable too: {backup_error}")
        return default


def _write_json_no_lock(filepath, data):
    """Internal: Write JSON without acquiring lock (caller must hold lock)"""
    dir_name = os.path.dirname(filepath)
    os.makedirs(dir_name, exist_ok=True)

    if os.path.exists(filepath):
        try:
            shutil.copy2(filepath, filepath + '.backup')
        except OSError as e:
            logger.warning(f"Could not create backup: {e}")

    # Write to temp file first, then atomic replace
    fd, temp_path = tempfile.mkstemp(suffix='.json', dir=dir_name)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=4, ensure_ascii=False)
        os.replace(temp_path, filepath)
    except Exception:
        if os.path.exists(temp_path):
            os.remove(temp_path)
        raise
    logger.debug(f"Successfully wrote JSON to {filepath}")


def read_document(filepath, default=None):
    """Safely read a single JSON document with locking"""
    with get_file_lock(filepath):
        return _read_json_no_lock(filepath, default)


def write_document(filepath, data):
    """
    Safely write a JSON document with atomic write and backup.
    Uses a temp file + rename approach to prevent corruption.
    """
    with get_file_lock(filepath):
        _write_json_no_lock(filepath, data)


def _timestamp():
    return datetime.now().isoformat(timespec='seconds')


def _unpack(data):
    if isinstance(data, list):
        next_id = max([item.get('id', 0) for item in data], default=0) + 1
        return data, next_id
    return data.get('items', []), data.get('next_id', 1)


class Collection:
    """A list of JSON documents with sequential integer ids"""

    def __init__(self, data_dir, name):
        self.name = name
        self.filepath = os.path.join(data_dir, f'{name}.json')

    def _load(self):
        return _unpack(_read_json_no_lock(self.filepath, []))

    def _save(self, items, next_id):
        _write_json_no_lock(self.filepath, {'next_id': next_id, 'items': items})

    def all(self):
        with get_file_lock(self.filepath):
            items, _ = self._load()
        return items

    def get(self, doc_id):
        return next((item for item in self.all() if item.get('id') == doc_id), None)

    def find(self, predicate):
        return [item for item in self.all() if predicate(item)]

    def insert(self, document, unique_check_fn=None):
        """
        Atomically add a document.
        The read, duplicate check and write happen under one lock.

        Args:
            document: dict to store; 'id' and 'created_at' are assigned here
            unique_check_fn: Optional function(items, document) -> error_msg or None

        Returns:
            (success: bool, error_msg: str or None, document: dict)
        """
        with get_file_lock(self.filepath):
            items, next_id = self._load()

            if unique_check_fn:
                error_msg = unique_check_fn(items, document)
                if error_msg:
                    return False, error_msg, document

            document['id'] = next_id
            document.setdefault('created_at', _timestamp())
            items.append(document)
            self._save(items, next_id + 1)

        logger.info(f"Created {self.name} #{document['id']}")
        return True, None, document

    def update(self, doc_id, changes):
        """Merge changes into a document. Returns the updated document or None"""
        with get_file_lock(self.filepath):
            items, next_id = self._load()
            document = next((item for item in items if item.get('id') == doc_id), None)
            if document is None:
                return None
            for key, value in changes.items():
                if key != 'id':
                    document[key] = value
            document['updated_at'] = _timestamp()
            self._save(items, next_id)

        logger.info(f"Updated {self.name} #{doc_id}")
        return document

    def delete(self, doc_id):
        """Remove a document. Returns the removed document or None"""
        with get_file_lock(self.filepath):
            items, next_id = self._load()
            document = next((item for item in items if item.get('id') == doc_id), None)
            if document is None:
                return None
            items.remove(document)
            self._save(items, next_id)

        logger.info(f"Deleted {self.name} #{doc_id}")
        return document

    def delete_where(self, predicate):
        """Remove every document matching predicate. Returns how many were removed"""
        with get_file_lock(self.filepath):
            items, next_id = self._load()
            kept = [item for item in items if not predicate(item)]
            removed = len(items) - len(kept)
            if removed:
                self._save(kept, next_id)

        if removed:
            logger.info(f"Deleted {removed} {self.name} document(s)")
        return removed
