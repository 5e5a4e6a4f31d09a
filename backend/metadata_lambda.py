import boto3
from datetime import datetime
from fractions import Fraction
import logging
from PIL import Image
from PIL.ExifTags import GPSTAGS, IFD, TAGS
import os
import tempfile
import time
import urllib.parse

from photo_metadata import FaceDetail, PhotoMetadata

# Configure logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)
logger.info("==== Metadata Lambda START ====")

# Initialize AWS clients
s3_client = boto3.client('s3')
rekognition_client = boto3.client('rekognition')

dynamodb = boto3.resource('dynamodb')
METADATA_TABLE_NAME = os.getenv('DYNAMODB_TABLE', 'wedding-photo-metadata')
tbl_metadata = dynamodb.Table(METADATA_TABLE_NAME)

# Configuration
COLLECTION_ID = os.getenv('REKOGNITION_COLLECTION', 'wedding-faces')
MAX_FACES = 10


def lambda_handler(event, context):
    """
    Handle S3 ObjectCreated notifications for uploaded photos.
    Records are processed one after another; a failed record is logged and
    does not stop the rest of the batch.
    """
    records = event.get('Records', [])
    logger.info(f"Received {len(records)} S3 records")

    processed = 0
    failed = 0
    for record in records:
        if process_record(record):
            processed += 1
        else:
            failed += 1

    logger.info(f"Processed {processed} photos, {failed} failed")
    return {'processed': processed, 'failed': failed}


def process_record(record):
    """
    Download, extract, index and store one uploaded photo.
    Returns True when a metadata item was written.
    """
    bucket = record['s3']['bucket']['name']
    # Keys arrive URL-encoded in S3 notifications
    key = urllib.parse.unquote_plus(record['s3']['object']['key'])
    size = record['s3']['object'].get('size', 0)

    logger.info(f"Processing: s3://{bucket}/{key} (size: {size} bytes)")

    try:
        temp_path = download_to_temp(bucket, key)
    except Exception as e:
        logger.error(f"Error downloading {key}: {str(e)}")
        return False

    try:
        metadata = extract_metadata(temp_path, key, size)
    finally:
        os.remove(temp_path)

    # Metadata is stored even when face indexing fails
    try:
        metadata.faces = index_faces(bucket, key)
        logger.info(f"Indexed {metadata.face_count} faces for {key}")
    except Exception as e:
        logger.error(f"Error indexing faces for {key}: {str(e)}")

    try:
        tbl_metadata.put_item(Item=metadata.to_item())
    except Exception as e:
        logger.error(f"Error storing metadata for {key}: {str(e)}")
        return False

    logger.info(f"Successfully processed {key}")
    return True


def download_to_temp(bucket, key):
    """
    Download an object to a temporary file and return its path.
    The caller owns the file and removes it.
    """
    with tempfile.NamedTemporaryFile(prefix='photo-', delete=False) as temp_file:
        temp_path = temp_file.name
        try:
            s3_client.download_fileobj(bucket, key, temp_file)
        except Exception:
            temp_file.close()
            os.remove(temp_path)
            raise
    return temp_path


def extract_metadata(file_path, key, file_size):
    """
    Build the photo record from the EXIF tags of a local image file.
    A file without readable EXIF yields a record with only identity and size.
    """
    metadata = PhotoMetadata(
        photo_id=key,
        uploaded_at=int(time.time()),
        file_size=file_size
    )

    try:
        tags, gps_tags = read_exif_tags(file_path)
    except Exception as e:
        logger.warning(f"No EXIF data found in {key}: {str(e)}")
        return metadata

    try:
        apply_exif(metadata, tags, gps_tags)
    except Exception as e:
        logger.warning(f"Unreadable EXIF data in {key}: {str(e)}")
        return PhotoMetadata(photo_id=key, uploaded_at=metadata.uploaded_at, file_size=file_size)
    return metadata


def read_exif_tags(file_path):
    """
    Read EXIF tags keyed by tag name: IFD0 merged with the Exif sub-IFD,
    and the GPS IFD separately.
    """
    with Image.open(file_path) as image:
        exif = image.getexif()
        tags = {TAGS.get(tag_id, tag_id): value for tag_id, value in exif.items()}
        for tag_id, value in exif.get_ifd(IFD.Exif).items():
            tags[TAGS.get(tag_id, tag_id)] = value
        gps_tags = {GPSTAGS.get(tag_id, tag_id): value for tag_id, value in exif.get_ifd(IFD.GPSInfo).items()}
    return tags, gps_tags


def apply_exif(metadata, tags, gps_tags=None):
    """
    Copy the capture attributes found in named EXIF tags onto a PhotoMetadata.
    Tags that are missing or cannot be converted are left unset.
    """
    gps_tags = gps_tags or {}

    metadata.make = _read_tag(tags, 'Make', _clean_string)
    metadata.model = _read_tag(tags, 'Model', _clean_string)

    date_taken = _read_tag(tags, 'DateTimeOriginal', format_exif_datetime)
    if date_taken is None:
        date_taken = _read_tag(tags, 'DateTime', format_exif_datetime)
    metadata.date_taken = date_taken

    if 'GPSLatitude' in gps_tags and 'GPSLongitude' in gps_tags:
        latitude = _read_tag(gps_tags, 'GPSLatitude', lambda v: gps_to_degrees(v, gps_tags.get('GPSLatitudeRef')))
        longitude = _read_tag(gps_tags, 'GPSLongitude', lambda v: gps_to_degrees(v, gps_tags.get('GPSLongitudeRef')))
        if latitude is not None and longitude is not None:
            metadata.latitude = latitude
            metadata.longitude = longitude
    metadata.altitude = _read_tag(gps_tags, 'GPSAltitude', lambda v: gps_altitude(v, gps_tags.get('GPSAltitudeRef')))

    metadata.focal_length = _read_tag(tags, 'FocalLength', format_focal_length)
    metadata.f_number = _read_tag(tags, 'FNumber', format_f_number)
    metadata.exposure_time = _read_tag(tags, 'ExposureTime', format_exposure_time)
    metadata.iso = _read_tag(tags, 'ISOSpeedRatings', _to_int)
    metadata.width = _read_tag(tags, 'ExifImageWidth', _to_int)
    metadata.height = _read_tag(tags, 'ExifImageHeight', _to_int)
    metadata.orientation = _read_tag(tags, 'Orientation', _to_int)
    return metadata


def _read_tag(tags, name, convert):
    value = tags.get(name)
    if value is None:
        return None
    try:
        return convert(value)
    except (AttributeError, TypeError, ValueError, ZeroDivisionError) as e:
        logger.warning(f"Skipping unreadable EXIF tag {name}={value!r}: {str(e)}")
        return None


def _first(value):
    # Multi-valued tags come back as tuples
    if isinstance(value, (tuple, list)):
        if not value:
            raise ValueError('empty tag value')
        return value[0]
    return value


def _clean_string(value):
    if isinstance(value, bytes):
        value = value.decode('utf-8', errors='ignore')
    return str(value).strip('\x00').strip() or None


def _to_int(value):
    return int(_first(value))


def as_fraction(value):
    """
    Convert an EXIF rational (Pillow IFDRational, Fraction or int) to a Fraction
    """
    value = _first(value)
    if isinstance(value, float):
        return Fraction(value).limit_denominator(1000000)
    if not hasattr(value, 'numerator') or not hasattr(value, 'denominator'):
        raise TypeError(f'not a rational: {value!r}')
    return Fraction(value.numerator, value.denominator)


def format_exif_datetime(value):
    """
    '2024:06:15 14:30:00' -> '2024-06-15T14:30:00Z'
    """
    taken = datetime.strptime(_clean_string(value), '%Y:%m:%d %H:%M:%S')
    return taken.strftime('%Y-%m-%dT%H:%M:%SZ')


def format_focal_length(value):
    return f"{float(as_fraction(value)):.1f}mm"


def format_f_number(value):
    return f"f/{float(as_fraction(value)):.1f}"


def format_exposure_time(value):
    # Kept as a fraction: 1/500 must not become 0.002
    exposure = as_fraction(value)
    return f"{exposure.numerator}/{exposure.denominator}"


def gps_to_degrees(dms, ref):
    degrees, minutes, seconds = (float(as_fraction(part)) for part in dms)
    coordinate = degrees + minutes / 60 + seconds / 3600
    if ref is not None and _clean_string(ref).upper() in ('S', 'W'):
        coordinate = -coordinate
    return coordinate


def gps_altitude(value, ref):
    altitude = float(as_fraction(value))
    # Ref 1 means below sea level
    if ref in (1, b'\x01'):
        altitude = -altitude
    return altitude


def index_faces(bucket, key):
    """
    Index the faces of an S3 object into the face collection
    """
    response = rekognition_client.index_faces(
        CollectionId=COLLECTION_ID,
        Image={
            'S3Object': {
                'Bucket': bucket,
                'Name': key
            }
        },
        DetectionAttributes=['ALL'],
        MaxFaces=MAX_FACES,
        QualityFilter='AUTO'
    )
    return [FaceDetail.from_face_record(face_record) for face_record in response.get('FaceRecords', [])]
