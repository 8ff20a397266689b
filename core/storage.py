import asyncio
import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from omegaconf import DictConfig

from core.errors import FatalCallFailure, TransientCallFailure, ValidationError
from core.executor import CallExecutor
from core.models import (
    Chunk, SanitizedDocument, SourceDescriptor, SourceKind, SourceRegistryRecord, StoredDocument, iso_now,
)
from core.sources import get_registry_type, get_type_folder, sanitize_identifier
from core.utils import collapse_whitespace, get_docker_or_local_path

logger = logging.getLogger(__name__)

CONTENT_INDEX_KEY = 'metadata/content-index.json'
NON_PRINTABLE_PATTERN = re.compile(r'[^\x20-\x7E]')
TITLE_CLEAN_PATTERN = re.compile(r'[^\w\s\-.]')
METADATA_ATTRIBUTE_KEYS = {'datasource', 'type', 'url', 'title'}


def sanitize_metadata_value(value: Any, max_length: int = 1000) -> str:
    """
    Reduce a value to printable ASCII so it can travel in object metadata headers.

    Args:
        value: anything; converted with str()
        max_length (int): cap on the returned length

    Returns:
        str: the sanitized value, 'Untitled' when nothing printable is left
    """
    if value is None:
        return 'Untitled'
    cleaned = NON_PRINTABLE_PATTERN.sub('', str(value))
    cleaned = collapse_whitespace(cleaned)[:max_length].strip()
    return cleaned or 'Untitled'


def clean_title(title: str, max_length: int = 200) -> str:
    return collapse_whitespace(TITLE_CLEAN_PATTERN.sub('', title or ''))[:max_length] or 'Untitled'


def metadata_attribute(value: str, include_for_embedding: bool) -> Dict[str, Any]:
    return {
        'value': {'type': 'STRING', 'stringValue': value},
        'includeForEmbedding': include_for_embedding,
    }


def validate_metadata(metadata: Dict[str, Any]) -> List[str]:
    """
    Check a sidecar metadata document against the expected schema.

    Returns:
        List[str]: problems found, empty when the document is valid
    """
    problems = []
    attributes = metadata.get('metadataAttributes')
    if not isinstance(attributes, dict):
        return ['metadataAttributes must be an object']
    for key in METADATA_ATTRIBUTE_KEYS:
        if key not in attributes:
            problems.append(f"missing attribute '{key}'")
    if 'page' not in attributes and 'filename' not in attributes:
        problems.append("missing attribute 'page' or 'filename'")
    for key, attribute in attributes.items():
        value = attribute.get('value', {}) if isinstance(attribute, dict) else {}
        if value.get('type') != 'STRING' or not isinstance(value.get('stringValue'), str):
            problems.append(f"attribute '{key}' must be a STRING value")
        if not isinstance(attribute, dict) or not isinstance(attribute.get('includeForEmbedding'), bool):
            problems.append(f"attribute '{key}' needs a boolean includeForEmbedding")
    return problems

# =============================================================================
# OBJECT STORES
# =============================================================================

class ObjectStore(ABC):
    """Minimal key/value object storage used by the StorageWriter. All methods block."""

    @abstractmethod
    def put_text(self, key: str, text: str, content_type: str = 'text/plain',
                 metadata: Optional[Dict[str, str]] = None) -> None:
        ...

    @abstractmethod
    def get_text(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def list_keys(self, prefix: str) -> List[str]:
        ...

    def put_json(self, key: str, data: Any, metadata: Optional[Dict[str, str]] = None) -> None:
        self.put_text(key, json.dumps(data, indent=2, default=str), 'application/json', metadata)

    def get_json(self, key: str) -> Optional[Any]:
        text = self.get_text(key)
        if text is None:
            return None
        return json.loads(text)

    def exists(self, key: str) -> bool:
        return self.get_text(key) is not None


class LocalObjectStore(ObjectStore):
    """
    Object store on the local filesystem. Writes go to a temporary file first and
    are moved into place with os.replace, so readers never see partial objects.
    """
    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, key))
        if not path.startswith(self.root + os.sep):
            raise ValueError(f"Key escapes the storage root: {key}")
        return path

    def put_text(self, key, text, content_type='text/plain', metadata=None):
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(path), prefix='.tmp-')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(text)
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def get_text(self, key):
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return f.read()

    def list_keys(self, prefix):
        res = []
        for dirpath, _, filenames in os.walk(self.root):
            for filename in filenames:
                if filename.startswith('.tmp-'):
                    continue
                key = os.path.relpath(os.path.join(dirpath, filename), self.root).replace(os.sep, '/')
                if key.startswith(prefix):
                    res.append(key)
        return sorted(res)


class S3ObjectStore(ObjectStore):
    """Object store backed by an S3 bucket (boto3 client)."""

    def __init__(self, bucket: str, client, prefix: str = ''):
        self.bucket = bucket
        self.client = client
        self.prefix = prefix.strip('/') + '/' if prefix else ''

    def _raise(self, key: str, error: Exception):
        response = getattr(error, 'response', {}) or {}
        status = response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        code = response.get('Error', {}).get('Code', '')
        if status in (429, 500, 502, 503, 504) or code in ('SlowDown', 'Throttling', 'RequestTimeout'):
            raise TransientCallFailure(f"S3 error for {key}: {error}", status_code=status)
        raise FatalCallFailure(f"S3 error for {key}: {error}", status_code=status)

    def put_text(self, key, text, content_type='text/plain', metadata=None):
        kwargs = {
            'Bucket': self.bucket,
            'Key': self.prefix + key,
            'Body': text.encode('utf-8'),
            'ContentType': content_type,
        }
        if metadata:
            kwargs['Metadata'] = {k: sanitize_metadata_value(v) for k, v in metadata.items()}
        try:
            self.client.put_object(**kwargs)
        except Exception as e:
            self._raise(key, e)

    def get_text(self, key):
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self.prefix + key)
        except self.client.exceptions.NoSuchKey:
            return None
        except Exception as e:
            self._raise(key, e)
        return response['Body'].read().decode('utf-8')

    def list_keys(self, prefix):
        keys = []
        paginator = self.client.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix + prefix):
            for item in page.get('Contents', []):
                keys.append(item['Key'][len(self.prefix):])
        return keys


def create_s3_client(storage_cfg: DictConfig):
    """Create boto3 S3 client with optional custom endpoint"""
    import boto3

    client_kwargs = {}
    if storage_cfg.get('endpoint_url'):
        client_kwargs['endpoint_url'] = storage_cfg.endpoint_url
    if storage_cfg.get('region'):
        client_kwargs['region_name'] = storage_cfg.region
    if storage_cfg.get('aws_access_key_id') and storage_cfg.get('aws_secret_access_key'):
        client_kwargs['aws_access_key_id'] = storage_cfg.aws_access_key_id
        client_kwargs['aws_secret_access_key'] = storage_cfg.aws_secret_access_key
    return boto3.client('s3', **client_kwargs)


def create_object_store(cfg: DictConfig) -> ObjectStore:
    storage_cfg = cfg.get('storage', {})
    backend = storage_cfg.get('backend', 'local')
    if backend == 's3':
        bucket = storage_cfg.get('bucket')
        if not bucket:
            raise ValueError("storage.bucket is required for the s3 storage backend")
        logger.info(f"Using S3 object store s3://{bucket}")
        return S3ObjectStore(bucket, create_s3_client(storage_cfg), storage_cfg.get('prefix', ''))
    if backend != 'local':
        raise ValueError(f"Unknown storage backend: {backend}")
    output_dir = storage_cfg.get('output_dir', 'content_ingest_output')
    root = get_docker_or_local_path(docker_path=f'/home/ingest/{output_dir}', output_dir=output_dir)
    return LocalObjectStore(root)

# =============================================================================
# STORAGE WRITER
# =============================================================================

class StorageWriter(object):
    """
    Persist documents, chunks, the content index and the source registry.

    Every store call goes through the backend CallExecutor so storage writes
    share the same rate limits and retry policy as other backend calls.
    """
    def __init__(self, store: ObjectStore, executor: CallExecutor, cfg: Optional[DictConfig] = None):
        self.store = store
        self.executor = executor
        storage_cfg = cfg.get('storage', {}) if cfg is not None else {}
        self.metadata_max_length = storage_cfg.get('metadata_max_length', 1000)
        self._index_lock = asyncio.Lock()
        self._registry_lock = asyncio.Lock()

    async def _call(self, fn, *args, operation: str):
        return await self.executor.run_sync(fn, *args, operation=operation)

    # -------------------------------------------------------------------------
    # key layout
    # -------------------------------------------------------------------------

    @staticmethod
    def chunk_key(source: SourceDescriptor, chunk_id: str) -> str:
        return f"processed-chunks/{source.file_type}/{chunk_id}.json"

    @staticmethod
    def text_key(document: SanitizedDocument, date: str) -> str:
        return f"documents/{date}/{document.content_hash}.txt"

    @staticmethod
    def document_key(document: SanitizedDocument) -> str:
        source = document.source
        return (
            f"{get_type_folder(source.file_type)}/{source.datasource}/"
            f"{source.identifier}-{document.content_hash[:8]}.txt"
        )

    @staticmethod
    def registry_key(source: SourceDescriptor) -> str:
        return f"{get_type_folder(source.file_type)}/{source.datasource}/datasource.json"

    # -------------------------------------------------------------------------
    # payloads
    # -------------------------------------------------------------------------

    def build_document_metadata(self, document: SanitizedDocument) -> Dict[str, Any]:
        source = document.source
        attributes = {
            'datasource': metadata_attribute(sanitize_metadata_value(source.datasource, 100), True),
            'type': metadata_attribute(sanitize_metadata_value(source.file_type, 50), True),
            'url': metadata_attribute(sanitize_metadata_value(document.url or source.source_url or 'n/a'), False),
            'title': metadata_attribute(sanitize_metadata_value(clean_title(document.title), 200), False),
        }
        if source.kind == SourceKind.WEB:
            attributes['page'] = metadata_attribute(sanitize_metadata_value(source.identifier, 100), True)
        else:
            attributes['filename'] = metadata_attribute(
                sanitize_metadata_value(source.filename or source.identifier, 200), True)
        return {'metadataAttributes': attributes}

    def build_chunk_payload(self, document: SanitizedDocument, chunk: Chunk) -> Dict[str, Any]:
        source = document.source
        return {
            'chunk_id': chunk.id,
            'document_id': document.document_id,
            'source_type': source.file_type,
            'source_url': document.url,
            'title': document.title,
            'content': chunk.primary_text,
            'context': chunk.context_text,
            'chunk_index': chunk.index + 1,
            'total_chunks': chunk.total_chunks,
            'word_count': chunk.word_count,
            'metadata': {
                'datasource': source.datasource,
                'type': source.file_type,
                'document_id': document.document_id,
                **{k: v for k, v in chunk.metadata.items() if k not in ('overlap_text', 'separator')},
            },
        }

    def object_metadata(self, document: SanitizedDocument) -> Dict[str, str]:
        source = document.source
        return {
            'datasource': sanitize_metadata_value(source.datasource, self.metadata_max_length),
            'content-type-tag': sanitize_metadata_value(source.file_type, self.metadata_max_length),
            'title': sanitize_metadata_value(document.title, self.metadata_max_length),
            'source-url': sanitize_metadata_value(document.url or source.source_url, self.metadata_max_length),
        }

    # -------------------------------------------------------------------------
    # content index and registry
    # -------------------------------------------------------------------------

    def _append_index_entry(self, entry: Dict[str, Any]) -> int:
        index = self.store.get_json(CONTENT_INDEX_KEY) or []
        index.append(entry)
        self.store.put_json(CONTENT_INDEX_KEY, index)
        return len(index)

    async def append_content_index(self, entry: Dict[str, Any]) -> None:
        # read-modify-write; the lock keeps concurrent pages of this process from losing entries
        async with self._index_lock:
            size = await self._call(self._append_index_entry, entry, operation="append content index")
        logger.debug(f"Content index now holds {size} entries")

    def _upsert_registry(self, source: SourceDescriptor) -> SourceRegistryRecord:
        key = self.registry_key(source)
        existing = self.store.get_json(key)
        now = iso_now()
        record = SourceRegistryRecord(
            id=source.datasource,
            type=get_registry_type(source.file_type),
            display_name=sanitize_metadata_value(source.display_name, 200),
            source_url=source.source_url,
            created_at=now,
        )
        if existing:
            record.created_at = existing.get('created_at', now)
            record.updated_at = now
            logger.info(f"Updating source registry record {key}")
        else:
            logger.info(f"Creating source registry record {key}")
        self.store.put_json(key, record.to_dict())
        return record

    async def upsert_registry(self, source: SourceDescriptor) -> SourceRegistryRecord:
        async with self._registry_lock:
            return await self._call(self._upsert_registry, source, operation=f"registry {source.datasource}")

    # -------------------------------------------------------------------------
    # public API
    # -------------------------------------------------------------------------

    async def store_document(self, document: SanitizedDocument, chunks: List[Chunk]) -> StoredDocument:
        """
        Write a document, its chunks, its content-index entry and its source registry record.

        Chunks are written one after another in index order. A failure of the registry
        update is logged and does not fail the document.

        Returns:
            StoredDocument: the keys that were written

        Raises:
            ValidationError: the sidecar metadata does not match the schema; nothing is written
        """
        date = iso_now()[:10]
        source = document.source
        object_metadata = self.object_metadata(document)
        document_key = self.document_key(document)
        metadata_key = f"{document_key}.metadata.json"
        sidecar = self.build_document_metadata(document)
        problems = validate_metadata(sidecar)
        if problems:
            logger.error(f"Refusing to store {document_key}: {'; '.join(problems)}")
            raise ValidationError(f"Invalid metadata for {document_key}: {'; '.join(problems)}")

        chunk_keys = []
        for chunk in sorted(chunks, key=lambda c: c.index):
            key = self.chunk_key(source, chunk.id)
            await self._call(self.store.put_json, key, self.build_chunk_payload(document, chunk), object_metadata,
                             operation=f"store chunk {chunk.id}")
            chunk_keys.append(key)

        text_key = self.text_key(document, date)
        await self._call(self.store.put_text, text_key, document.cleaned_text, 'text/plain', object_metadata,
                         operation=f"store text {document.content_hash[:8]}")

        await self._call(self.store.put_text, document_key, document.cleaned_text, 'text/plain', object_metadata,
                         operation=f"store document {document_key}")
        await self._call(self.store.put_json, metadata_key, sidecar, operation=f"store metadata {metadata_key}")

        total_words = sum(c.word_count for c in chunks)
        await self.append_content_index({
            'document_id': document.document_id,
            'title': document.title,
            'source_url': document.url,
            'source_type': source.file_type,
            'datasource': source.datasource,
            'chunk_count': len(chunks),
            'total_word_count': total_words,
            'processed_timestamp': iso_now(),
            'chunk_keys': chunk_keys,
            'document_key': document_key,
            'metadata': {'datasource': source.datasource, 'type': source.file_type},
        })

        registry_key = self.registry_key(source)
        try:
            await self.upsert_registry(source)
        except Exception as e:
            logger.warning(f"Source registry update for {registry_key} failed (non-blocking): {e}")

        logger.info(f"Stored {document.url or document.title} as {document.document_id[:12]} with {len(chunks)} chunks")
        return StoredDocument(
            document_id=document.document_id,
            chunk_keys=chunk_keys,
            text_key=text_key,
            document_key=document_key,
            metadata_key=metadata_key,
            registry_key=registry_key,
            total_word_count=total_words,
        )

    async def store_json(self, key: str, data: Any) -> None:
        await self._call(self.store.put_json, key, data, operation=f"store {key}")

    async def get_content_index(self) -> List[Dict[str, Any]]:
        return await self._call(self.store.get_json, CONTENT_INDEX_KEY, operation="read content index") or []

    async def get_registry(self, source: SourceDescriptor) -> Optional[SourceRegistryRecord]:
        data = await self._call(self.store.get_json, self.registry_key(source), operation="read registry")
        return SourceRegistryRecord.from_dict(data) if data else None

    async def list_documents(self, datasource: str, type_folder: str = 'websites') -> List[str]:
        prefix = f"{type_folder}/{sanitize_identifier(datasource)}/"
        keys = await self._call(self.store.list_keys, prefix, operation=f"list {prefix}")
        return [k for k in keys if not k.endswith('.metadata.json') and not k.endswith('datasource.json')]

    async def get_stats(self) -> Dict[str, Any]:
        index = await self.get_content_index()
        by_type: Dict[str, int] = {}
        for entry in index:
            by_type[entry.get('source_type', 'unknown')] = by_type.get(entry.get('source_type', 'unknown'), 0) + 1
        return {
            'total_documents': len(index),
            'total_chunks': sum(e.get('chunk_count', 0) for e in index),
            'total_words': sum(e.get('total_word_count', 0) for e in index),
            'documents_by_type': by_type,
        }
