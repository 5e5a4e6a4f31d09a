import base64
import json
import boto3
from datetime import timezone
import logging
import os
import time
from decimal import Decimal

from photo_metadata import MetadataQuery, filter_by_face_id

# Configure logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)
logger.info("==== App Lambda START ====")
# Initialize S3 client
s3_client = boto3.client('s3')

# Initialize DynamoDB
dynamodb = boto3.resource('dynamodb')
METADATA_TABLE_NAME = os.getenv('DYNAMODB_TABLE', 'wedding-photo-metadata')
tbl_metadata = dynamodb.Table(METADATA_TABLE_NAME)

# Configuration
BUCKET_NAME = os.getenv('S3_BUCKET', '')
UPLOAD_PREFIX = 'uploads/'
UPLOAD_URL_EXPIRY = 15 * 60
VIEW_URL_EXPIRY = 60 * 60

with open(os.path.join(os.path.dirname(os.path.abspath(__file__)), 'index.html'), encoding='utf-8') as f:
    INDEX_HTML = f.read()

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'Content-Type'
}

NO_CACHE_HEADERS = {
    'Cache-Control': 'no-cache, no-store, must-revalidate',
    'Pragma': 'no-cache',
    'Expires': '0'
}


def lambda_handler(event, context):
    """
    Main Lambda handler behind the function URL.
    Routes on exact method and path.
    """
    http = (event.get('requestContext') or {}).get('http') or {}
    http_method = http.get('method', '')
    path = http.get('path') or event.get('rawPath', '')
    logger.info(f"Received request: {http_method} {path}")

    if http_method == 'GET' and path == '/':
        return serve_page()

    if http_method == 'POST' and path == '/upload':
        return create_upload_url(event)

    if http_method == 'GET' and path == '/gallery':
        return list_gallery()

    if http_method == 'GET' and path == '/metadata':
        query_params = event.get('queryStringParameters') or {}
        logger.info(f"Query params: {query_params}")
        return query_metadata(query_params)

    return create_response(404, {'error': 'Not found'})


def serve_page():
    return {
        'statusCode': 200,
        'headers': {
            'Content-Type': 'text/html; charset=utf-8'
        },
        'body': INDEX_HTML
    }


def parse_body(event):
    """
    Decode the request body as a JSON object. Raises ValueError when it is not one.
    """
    raw_body = event.get('body') or ''
    if event.get('isBase64Encoded'):
        raw_body = base64.b64decode(raw_body).decode('utf-8')

    body = json.loads(raw_body)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValueError('request body must be a JSON object')
    return body


def create_upload_url(event):
    """
    Mint a pre-signed PUT URL for a new object under uploads/
    """
    try:
        upload_request = parse_body(event)
    except ValueError as e:
        logger.warning(f"Rejecting upload request: {str(e)}")
        return create_response(400, {'error': 'Invalid JSON'})

    file_name = upload_request.get('fileName') or ''
    content_type = upload_request.get('contentType') or ''
    if not isinstance(file_name, str) or not isinstance(content_type, str):
        return create_response(400, {'error': 'Invalid JSON'})
    if not file_name:
        return create_response(400, {'error': 'fileName is required'})

    key = f"{UPLOAD_PREFIX}{int(time.time())}-{file_name}"

    params = {
        'Bucket': BUCKET_NAME,
        'Key': key
    }
    if content_type:
        params['ContentType'] = content_type

    try:
        upload_url = s3_client.generate_presigned_url(
            'put_object',
            Params=params,
            ExpiresIn=UPLOAD_URL_EXPIRY
        )
    except Exception as e:
        logger.error(f"Error generating upload URL for {key}: {str(e)}")
        return create_response(500, {'error': 'Failed to generate upload URL', 'details': str(e)})

    logger.info(f"Generated upload URL for {key}")
    return create_response(200, {
        'uploadUrl': upload_url,
        'key': key
    }, {'Access-Control-Allow-Methods': 'POST, OPTIONS'})


def list_gallery():
    """
    List every uploaded photo with a pre-signed view URL
    """
    try:
        objects = []
        paginator = s3_client.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=BUCKET_NAME, Prefix=UPLOAD_PREFIX):
            objects.extend(page.get('Contents', []))
    except Exception as e:
        logger.error(f"Error listing {UPLOAD_PREFIX} in {BUCKET_NAME}: {str(e)}")
        return create_response(500, {'error': 'Failed to list files', 'details': str(e)})

    items = []
    for obj in objects:
        try:
            url = s3_client.generate_presigned_url(
                'get_object',
                Params={
                    'Bucket': BUCKET_NAME,
                    'Key': obj['Key']
                },
                ExpiresIn=VIEW_URL_EXPIRY
            )
        except Exception as e:
            logger.warning(f"Skipping {obj['Key']}, could not generate view URL: {str(e)}")
            continue

        items.append({
            'key': obj['Key'],
            'url': url,
            'lastModified': format_timestamp(obj['LastModified']),
            'size': obj['Size']
        })

    logger.info(f"Listed {len(items)} gallery items")
    return create_response(200, items, {'Access-Control-Allow-Methods': 'GET, OPTIONS', **NO_CACHE_HEADERS})


def query_metadata(query_params):
    """
    Scan the metadata table with the requested filters.
    minFaces, startDate, endDate and device are sent as the scan filter;
    faceId is matched against the scanned items afterwards.
    """
    query = MetadataQuery.from_params(query_params)

    scan_kwargs = {}
    scan_filter = query.scan_filter()
    if scan_filter is not None:
        scan_kwargs['FilterExpression'] = scan_filter

    try:
        items = scan_all(tbl_metadata, **scan_kwargs)
    except Exception as e:
        logger.error(f"Error scanning {METADATA_TABLE_NAME}: {str(e)}")
        return create_response(500, {'error': 'Failed to query metadata', 'details': str(e)})

    photos = filter_by_face_id(items, query.face_id)
    logger.info(f"Metadata query matched {len(photos)} of {len(items)} scanned photos")
    return create_response(200, photos, {'Access-Control-Allow-Methods': 'GET, OPTIONS', **NO_CACHE_HEADERS})


def scan_all(table, **kwargs):
    """
    Scan a table to the end, following LastEvaluatedKey
    """
    items = []
    while True:
        response = table.scan(**kwargs)
        items.extend(response.get('Items', []))
        last_key = response.get('LastEvaluatedKey')
        if not last_key:
            return items
        kwargs['ExclusiveStartKey'] = last_key


def format_timestamp(value):
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%SZ')


def _convert_decimals(value):
    if isinstance(value, list):
        return [_convert_decimals(v) for v in value]
    if isinstance(value, dict):
        return {k: _convert_decimals(v) for k, v in value.items()}
    if isinstance(value, Decimal):
        # Cast to int if no fractional part
        return int(value) if value % 1 == 0 else float(value)
    return value


def create_response(status_code, body, extra_headers=None):
    """
    Create a standardized JSON response
    """
    headers = {
        'Content-Type': 'application/json',
        **CORS_HEADERS
    }
    if extra_headers:
        headers.update(extra_headers)

    return {
        'statusCode': status_code,
        'headers': headers,
        'body': json.dumps(_convert_decimals(body), ensure_ascii=False)
    }
