"""
Photo metadata records stored in the metadata table, and the filters used
to query them
"""
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal

from boto3.dynamodb.conditions import Attr

logger = logging.getLogger()

# Rekognition reports emotion confidence on a 0-100 scale
EMOTION_CONFIDENCE_THRESHOLD = 50


def _to_decimal(value):
    # DynamoDB rejects float, so numbers go in as Decimal built from their repr
    return Decimal(str(value))


@dataclass
class BoundingBox:
    width: float = 0.0
    height: float = 0.0
    left: float = 0.0
    top: float = 0.0

    def to_item(self):
        return {
            'width': _to_decimal(self.width),
            'height': _to_decimal(self.height),
            'left': _to_decimal(self.left),
            'top': _to_decimal(self.top)
        }


@dataclass
class FaceDetail:
    """One face indexed in the face collection, embedded in its photo record."""

    face_id: str
    confidence: float
    bounding_box: BoundingBox = field(default_factory=BoundingBox)
    age_range: tuple[int, int] | None = None
    gender: str | None = None
    smile: bool = False
    emotions: list[str] = field(default_factory=list)

    @classmethod
    def from_face_record(cls, face_record):
        """
        Build a FaceDetail from one entry of an IndexFaces ``FaceRecords`` list
        """
        face = face_record['Face']
        detail = face_record.get('FaceDetail') or {}

        bounding_box = BoundingBox()
        box = detail.get('BoundingBox')
        if box:
            bounding_box = BoundingBox(
                width=box.get('Width', 0.0),
                height=box.get('Height', 0.0),
                left=box.get('Left', 0.0),
                top=box.get('Top', 0.0)
            )

        age_range = None
        if detail.get('AgeRange'):
            age_range = (detail['AgeRange'].get('Low', 0), detail['AgeRange'].get('High', 0))

        gender = (detail.get('Gender') or {}).get('Value')
        smile = bool((detail.get('Smile') or {}).get('Value', False))

        emotions = [
            emotion['Type'] for emotion in detail.get('Emotions', [])
            if emotion.get('Confidence') is not None and emotion['Confidence'] > EMOTION_CONFIDENCE_THRESHOLD
        ]

        return cls(
            face_id=face['FaceId'],
            confidence=face['Confidence'],
            bounding_box=bounding_box,
            age_range=age_range,
            gender=gender,
            smile=smile,
            emotions=emotions
        )

    def to_item(self):
        item = {
            'faceId': self.face_id,
            'confidence': _to_decimal(self.confidence),
            'boundingBox': self.bounding_box.to_item()
        }
        if self.age_range is not None:
            item['ageRange'] = {'low': self.age_range[0], 'high': self.age_range[1]}
        if self.gender:
            item['gender'] = self.gender
        if self.smile:
            item['smile'] = True
        if self.emotions:
            item['emotions'] = list(self.emotions)
        return item


@dataclass
class PhotoMetadata:
    """
    Everything known about one uploaded photo: its identity, the capture
    attributes read from EXIF and the faces indexed from it.

    ``photo_id`` is the object key (``uploads/<timestamp>-<filename>``) and,
    together with ``uploaded_at``, the table key. Optional attributes left
    empty or zero are not written to the table.
    """

    photo_id: str
    uploaded_at: int
    file_size: int
    date_taken: str | None = None
    make: str | None = None
    model: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    altitude: float | None = None
    focal_length: str | None = None
    f_number: str | None = None
    exposure_time: str | None = None
    iso: int | None = None
    width: int | None = None
    height: int | None = None
    orientation: int | None = None
    faces: list[FaceDetail] = field(default_factory=list)

    @property
    def face_count(self):
        return len(self.faces)

    def to_item(self):
        """
        Serialize to a DynamoDB item using the table's camelCase attribute names
        """
        item = {
            'photoId': self.photo_id,
            'uploadedAt': self.uploaded_at,
            'fileSize': self.file_size,
            'faceCount': self.face_count
        }

        optional = {
            'dateTaken': self.date_taken,
            'make': self.make,
            'model': self.model,
            'focalLength': self.focal_length,
            'fNumber': self.f_number,
            'exposureTime': self.exposure_time,
            'iso': self.iso,
            'width': self.width,
            'height': self.height,
            'orientation': self.orientation
        }
        for name, value in optional.items():
            if value:
                item[name] = value

        for name, value in (('latitude', self.latitude), ('longitude', self.longitude), ('altitude', self.altitude)):
            if value:
                item[name] = _to_decimal(value)

        if self.faces:
            item['faces'] = [face.to_item() for face in self.faces]

        return item


@dataclass
class MetadataQuery:
    """
    Filters accepted by the metadata endpoint.

    ``min_faces``, ``start_date``, ``end_date`` and ``device`` become a scan
    FilterExpression. ``face_id`` lives inside each record's ``faces`` list,
    which a scan filter cannot match on, so it is applied to the scanned
    items afterwards.
    """

    face_id: str | None = None
    min_faces: int | None = None
    start_date: str | None = None
    end_date: str | None = None
    device: str | None = None

    @classmethod
    def from_params(cls, params):
        params = params or {}

        min_faces = None
        raw_min_faces = params.get('minFaces')
        if raw_min_faces:
            if re.fullmatch(r'[+-]?[0-9]+', raw_min_faces):
                min_faces = int(raw_min_faces)
            else:
                logger.info(f"Ignoring non-integer minFaces: {raw_min_faces!r}")

        return cls(
            face_id=params.get('faceId') or None,
            min_faces=min_faces,
            start_date=params.get('startDate') or None,
            end_date=params.get('endDate') or None,
            device=params.get('device') or None
        )

    def scan_filter(self):
        """
        Return the combined scan condition, or None when no server-side filter applies
        """
        conditions = []
        if self.min_faces is not None:
            conditions.append(Attr('faceCount').gte(self.min_faces))
        # Dates compare as strings, so callers pass ISO-8601
        if self.start_date:
            conditions.append(Attr('dateTaken').gte(self.start_date))
        if self.end_date:
            conditions.append(Attr('dateTaken').lte(self.end_date))
        if self.device:
            conditions.append(Attr('model').contains(self.device))

        if not conditions:
            return None
        combined = conditions[0]
        for condition in conditions[1:]:
            combined = combined & condition
        return combined

    def matches(self, item):
        """
        Evaluate the scan condition against one item in memory. Missing
        attributes never match, as in DynamoDB.
        """
        if self.min_faces is not None:
            face_count = item.get('faceCount')
            if face_count is None or face_count < self.min_faces:
                return False

        date_taken = item.get('dateTaken')
        if self.start_date and (not isinstance(date_taken, str) or date_taken < self.start_date):
            return False
        if self.end_date and (not isinstance(date_taken, str) or date_taken > self.end_date):
            return False

        model = item.get('model')
        if self.device and (not isinstance(model, str) or self.device not in model):
            return False

        return True


def has_face(item, face_id):
    for face in item.get('faces') or []:
        if isinstance(face, dict) and face.get('faceId') == face_id:
            return True
    return False


def filter_by_face_id(items, face_id):
    """
    Keep the items with at least one face whose faceId equals face_id exactly
    """
    if not face_id:
        return list(items)
    return [item for item in items if has_face(item, face_id)]


def apply_filters(candidates, params):
    """
    Apply the metadata query filters to an in-memory candidate list: the
    scan conditions first, then the face id filter over what survives.
    Order of the candidates is preserved.
    """
    query = params if isinstance(params, MetadataQuery) else MetadataQuery.from_params(params)
    scanned = [item for item in candidates if query.matches(item)]
    return filter_by_face_id(scanned, query.face_id)
