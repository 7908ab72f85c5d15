import base64
import datetime
import json

from s3shuttle.policy import PostPolicy
from s3shuttle.signing import SIGNATURE_V2, RequestAuthenticator

NOW = datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc)
EXPIRATION = NOW + datetime.timedelta(hours=1)


def decode(fields):
    return json.loads(base64.b64decode(fields['policy']))


class TestPostPolicy:
    def test_v4_fields(self) -> None:
        auth = RequestAuthenticator('AK', 'SK', 'eu-west-1')
        fields = PostPolicy('bucket', 'photo.jpg', EXPIRATION, 'image/jpeg').sign(auth, now=NOW)

        assert fields['bucket'] == 'bucket'
        assert fields['key'] == 'photo.jpg'
        assert fields['Content-Type'] == 'image/jpeg'
        assert fields['x-amz-algorithm'] == 'AWS4-HMAC-SHA256'
        assert fields['x-amz-credential'] == 'AK/20240102/eu-west-1/s3/aws4_request'
        assert fields['x-amz-date'] == '20240102T030405Z'
        assert fields['x-amz-signature'] == auth.post_policy_signature(fields['policy'], now=NOW)

        document = decode(fields)
        assert document['expiration'] == '2024-01-02T04:04:05.000Z'
        assert ['eq', '$bucket', 'bucket'] in document['conditions']
        assert ['eq', '$key', 'photo.jpg'] in document['conditions']
        assert ['eq', '$Content-Type', 'image/jpeg'] in document['conditions']
        assert ['eq', '$x-amz-date', '20240102T030405Z'] in document['conditions']

    def test_v2_fields(self) -> None:
        auth = RequestAuthenticator('AK', 'SK', version=SIGNATURE_V2)
        fields = PostPolicy('bucket', 'k', EXPIRATION).sign(auth, now=NOW)
        assert fields['AWSAccessKeyId'] == 'AK'
        assert fields['signature'] == auth.post_policy_signature(fields['policy'])
        assert 'x-amz-signature' not in fields
        assert 'Content-Type' not in fields

    def test_prefix_key(self) -> None:
        policy = PostPolicy('bucket', 'uploads/', EXPIRATION)
        assert policy.is_prefix
        assert ['starts-with', '$key', 'uploads/'] in policy.conditions()
        fields = policy.sign(RequestAuthenticator('AK', 'SK'), now=NOW)
        assert fields['key'] == 'uploads/<NAME>'
        v2 = policy.sign(RequestAuthenticator('AK', 'SK', version=SIGNATURE_V2), now=NOW)
        assert v2['key'] == 'uploads/<NAME>'
