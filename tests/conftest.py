"""Shared test fixtures."""

import io
import os

# The Lambda modules create their AWS clients and read configuration at import
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("S3_BUCKET", "wedding-photos-test")
os.environ.setdefault("DYNAMODB_TABLE", "wedding-photo-metadata")

import pytest
from botocore.exceptions import ClientError
from PIL import Image
from PIL.ExifTags import Base


def client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def make_jpeg(**tags) -> bytes:
    """Encode a small JPEG carrying the given IFD0 tags, e.g. Make="Canon"."""
    image = Image.new("RGB", (16, 12), color=(200, 180, 160))
    exif = Image.Exif()
    for name, value in tags.items():
        exif[Base[name]] = value
    buffer = io.BytesIO()
    if tags:
        image.save(buffer, format="JPEG", exif=exif)
    else:
        image.save(buffer, format="JPEG")
    return buffer.getvalue()


def evaluate_condition(condition, item: dict) -> bool:
    """Evaluate a boto3 scan condition against an item the way DynamoDB does."""
    expression = condition.get_expression()
    operator = expression["operator"]
    values = expression["values"]
    if operator == "AND":
        return all(evaluate_condition(value, item) for value in values)

    attribute, operand = values
    if attribute.name not in item:
        return False
    value = item[attribute.name]
    if operator == ">=":
        return value >= operand
    if operator == "<=":
        return value <= operand
    if operator == "contains":
        return operand in value
    raise AssertionError(f"unexpected operator {operator}")


class FakeTable:
    """In-memory stand-in for a DynamoDB Table resource."""

    def __init__(self, items=None, page_size=None, scan_error=None):
        self.items = list(items or [])
        self.page_size = page_size
        self.scan_error = scan_error
        self.scan_calls = []
        self.put_items = []

    def scan(self, **kwargs):
        self.scan_calls.append(dict(kwargs))
        if self.scan_error is not None:
            raise self.scan_error

        items = self.items
        start = kwargs.get("ExclusiveStartKey", {}).get("offset", 0)
        end = len(items) if self.page_size is None else start + self.page_size
        page = items[start:end]

        condition = kwargs.get("FilterExpression")
        if condition is not None:
            page = [item for item in page if evaluate_condition(condition, item)]

        response = {"Items": page}
        if end < len(items):
            response["LastEvaluatedKey"] = {"offset": end}
        return response

    def put_item(self, Item):
        self.put_items.append(Item)
        return {}


@pytest.fixture
def fake_table() -> FakeTable:
    return FakeTable()


@pytest.fixture
def canon_jpeg() -> bytes:
    return make_jpeg(Make="Canon", Model="Canon EOS R5", DateTime="2024:06:15 14:30:00", Orientation=1)


def face_record(face_id: str, confidence: float, emotions=None) -> dict:
    """An IndexFaces FaceRecord as returned by Rekognition."""
    return {
        "Face": {
            "FaceId": face_id,
            "Confidence": confidence,
            "BoundingBox": {"Width": 0.2, "Height": 0.3, "Left": 0.1, "Top": 0.15},
        },
        "FaceDetail": {
            "BoundingBox": {"Width": 0.2, "Height": 0.3, "Left": 0.1, "Top": 0.15},
            "AgeRange": {"Low": 25, "High": 35},
            "Gender": {"Value": "Female", "Confidence": 99.1},
            "Smile": {"Value": True, "Confidence": 95.0},
            "Emotions": emotions if emotions is not None else [
                {"Type": "HAPPY", "Confidence": 92.4},
                {"Type": "CALM", "Confidence": 6.1},
            ],
            "Confidence": confidence,
        },
    }
