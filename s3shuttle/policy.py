"""POST policy documents for browser-based (HTML form) uploads."""

import base64
import datetime
import json
from typing import Dict, List, Optional

from .signing import ALGORITHM, ISO8601_FORMAT, SIGNATURE_V2, RequestAuthenticator

POLICY_EXPIRATION_FORMAT = '%Y-%m-%dT%H:%M:%S.000Z'
# Stands in for the object name below a prefix, replaced by the uploader
KEY_PLACEHOLDER = '<NAME>'


class PostPolicy:
    """
    Conditions an upload form must satisfy. A key ending in '/' is treated
    as a prefix: any object below it may be uploaded.
    """

    def __init__(self, bucket: str, key: str, expiration: datetime.datetime,
                 content_type: Optional[str] = None):
        self.bucket = bucket
        self.key = key
        self.expiration = expiration
        self.content_type = content_type

    @property
    def is_prefix(self) -> bool:
        return not self.key or self.key.endswith('/')

    def conditions(self) -> List:
        conds: List = [['eq', '$bucket', self.bucket]]
        if self.is_prefix:
            conds.append(['starts-with', '$key', self.key])
        else:
            conds.append(['eq', '$key', self.key])
        if self.content_type:
            conds.append(['eq', '$Content-Type', self.content_type])
        return conds

    def sign(self, authenticator: RequestAuthenticator,
             now: Optional[datetime.datetime] = None) -> Dict[str, str]:
        """Return the form fields that go along with the file in the POST"""
        if now is None:
            now = datetime.datetime.now(datetime.timezone.utc)
        conds = self.conditions()
        fields: Dict[str, str] = {'bucket': self.bucket}
        fields['key'] = self.key + KEY_PLACEHOLDER if self.is_prefix else self.key
        if self.content_type:
            fields['Content-Type'] = self.content_type

        if authenticator.version != SIGNATURE_V2:
            v4 = {
                'x-amz-algorithm': ALGORITHM,
                'x-amz-credential': authenticator.credential(now),
                'x-amz-date': now.strftime(ISO8601_FORMAT),
            }
            conds.extend(['eq', f"${k}", v] for k, v in v4.items())
            fields.update(v4)

        document = {
            'expiration': self.expiration.strftime(POLICY_EXPIRATION_FORMAT),
            'conditions': conds,
        }
        policy_base64 = base64.b64encode(json.dumps(document).encode('utf-8')).decode('ascii')
        signature = authenticator.post_policy_signature(policy_base64, now)

        fields['policy'] = policy_base64
        if authenticator.version == SIGNATURE_V2:
            fields['AWSAccessKeyId'] = authenticator.access_key
            fields['signature'] = signature
        else:
            fields['x-amz-signature'] = signature
        return fields
