"""
Sanity CMS sink.

Publishes the roster as `teamMember` documents through the Sanity HTTP API
(GROQ queries and the mutations endpoint). Documents are keyed by email; new
documents get an id derived from the identity so a retried create overwrites
instead of duplicating.
"""

import json
import hashlib
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from roster_sync.models import ExistingRecord, ProfileRecord, normalize_identity
from .base import SinkAdapterBase, SinkAPIError

logger = logging.getLogger(__name__)

TEAM_MEMBER_QUERY = '*[_type == $type]{_id, name, email, role, department}'
SITE_SETTINGS_QUERY = '*[_type == "siteSettings"][0]{_id}'


class SanitySink(SinkAdapterBase):
    """
    Sanity CMS sink adapter.

    Configuration keys (besides the base ones):
        dataset: Sanity dataset name
        document_type: Document type holding members (default "teamMember")
        upload_images: Upload authentic avatars as image assets (default True)
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.dataset = config.get('dataset', 'production')
        self.document_type = config.get('document_type', 'teamMember')
        self.upload_images = config.get('upload_images', True)
        self.image_timeout = config.get('image_timeout_seconds', 30)

        self._ids_by_identity: Dict[str, List[str]] = {}
        self._asset_cache: Dict[str, Optional[str]] = {}

        logger.info(f"Initialized Sanity sink {self.name} (dataset={self.dataset})")

    def query(self, groq: str, params: Optional[Dict[str, Any]] = None) -> Any:
        path = f"/data/query/{self.dataset}?query={quote(groq)}"
        for key, value in (params or {}).items():
            path += f"&{quote('$' + key)}={quote(json.dumps(value))}"
        return self.request('GET', path).get('result')

    def mutate(self, mutations: List[Dict[str, Any]]) -> Dict[str, Any]:
        return self.request('POST', f"/data/mutate/{self.dataset}?returnIds=true",
                            body={'mutations': mutations})

    def list_existing(self) -> List[ExistingRecord]:
        documents = self.query(TEAM_MEMBER_QUERY, {'type': self.document_type}) or []

        self._ids_by_identity = {}
        records = []
        for doc in documents:
            identity = normalize_identity(doc.get('email'))
            if not identity:
                logger.warning(f"{self.name}: document {doc.get('_id')} has no email, ignoring")
                continue
            self._ids_by_identity.setdefault(identity, []).append(doc['_id'])
            records.append(ExistingRecord(
                identity=identity,
                sink_id=doc['_id'],
                display_name=doc.get('name'),
                position=doc.get('role'),
                department=doc.get('department'),
            ))

        logger.info(f"Retrieved {len(records)} {self.document_type} documents from {self.name}")
        return records

    def create(self, record: ProfileRecord) -> None:
        document = self._document_fields(record)
        document['_id'] = self.document_id(record.identity)
        document['_type'] = self.document_type

        self.mutate([{'createOrReplace': document}])
        self._ids_by_identity[record.identity] = [document['_id']]
        logger.info(f"Created {self.document_type} for {record.display_name} <{record.identity}>")

    def update(self, identity: str, record: ProfileRecord) -> None:
        doc_ids = self._lookup(identity)
        if not doc_ids:
            raise SinkAPIError(f"No {self.document_type} document for {identity} in {self.name}")

        fields = self._document_fields(record)
        # A member whose picture became a placeholder loses the published image
        unset = ['image'] if self.upload_images and record.published_avatar is None else []
        mutations = []
        for doc_id in doc_ids:
            patch: Dict[str, Any] = {'id': doc_id, 'set': fields}
            if unset:
                patch['unset'] = unset
            mutations.append({'patch': patch})
        self.mutate(mutations)
        logger.info(f"Updated {self.document_type} for {record.display_name} <{identity}>")

    def delete(self, identity: str) -> None:
        doc_ids = self._lookup(identity)
        if not doc_ids:
            logger.warning(f"{identity} already absent from {self.name}, treating delete as done")
            return

        self.mutate([{'delete': {'id': doc_id}} for doc_id in doc_ids])
        self._ids_by_identity.pop(identity, None)
        logger.info(f"Deleted {self.document_type} <{identity}> ({len(doc_ids)} documents)")

    def update_alumni_count(self, count: int) -> None:
        """Store the alumni count on the siteSettings document, creating it if needed."""
        settings = self.query(SITE_SETTINGS_QUERY)
        if settings and settings.get('_id'):
            self.mutate([{'patch': {'id': settings['_id'], 'set': {'alumniCount': count}}}])
        else:
            self.mutate([{'create': {'_type': 'siteSettings', 'alumniCount': count}}])
        logger.info(f"Alumni count set to {count} in {self.name}")

    @staticmethod
    def document_id(identity: str) -> str:
        digest = hashlib.sha1(identity.encode('utf-8')).hexdigest()[:20]
        return f"teamMember-{digest}"

    def _lookup(self, identity: str) -> List[str]:
        identity = normalize_identity(identity)
        if identity not in self._ids_by_identity:
            docs = self.query(f'*[_type == $type && lower(email) == $email]{{_id}}',
                              {'type': self.document_type, 'email': identity}) or []
            self._ids_by_identity[identity] = [doc['_id'] for doc in docs]
        return self._ids_by_identity[identity]

    def _document_fields(self, record: ProfileRecord) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            'name': record.display_name,
            'email': record.identity,
            'role': record.role.position if record.role else '',
            'department': record.role.department if record.role else '',
        }
        if record.source_id:
            fields['slackId'] = record.source_id
        if record.username:
            fields['slackUsername'] = record.username

        image = self._image_reference(record)
        if image:
            fields['image'] = image
        return fields

    def _image_reference(self, record: ProfileRecord) -> Optional[Dict[str, Any]]:
        image_url = record.published_avatar
        if not image_url or not self.upload_images:
            return None

        if image_url not in self._asset_cache:
            self._asset_cache[image_url] = self._upload_image(image_url, record.display_name)

        asset_id = self._asset_cache[image_url]
        if not asset_id:
            return None
        return {'_type': 'image', 'asset': {'_type': 'reference', '_ref': asset_id}}

    def _upload_image(self, image_url: str, member_name: str) -> Optional[str]:
        try:
            response = httpx.get(image_url, timeout=self.image_timeout, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Could not download avatar for {member_name}, publishing without image: {e}")
            return None

        content_type = response.headers.get('content-type', 'image/jpeg').split(';')[0]
        filename = ''.join(c if c.isalnum() else '_' for c in member_name) + '_profile'
        try:
            asset = self.request('POST', f"/assets/images/{self.dataset}?filename={quote(filename)}",
                                 headers={'Content-Type': content_type}, raw_body=response.content)
        except SinkAPIError as e:
            logger.warning(f"Avatar upload failed for {member_name}, publishing without image: {e}")
            return None

        asset_id = (asset.get('document') or {}).get('_id')
        if asset_id:
            logger.debug(f"Uploaded avatar for {member_name}: {asset_id}")
        return asset_id

