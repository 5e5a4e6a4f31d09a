#!/usr/bin/env python3
"""
Script to create the photo metadata DynamoDB table and the Rekognition face collection
Run this script once before deploying the Lambda functions
"""

import boto3
import os
import sys
from botocore.exceptions import ClientError

TABLE_NAME = os.getenv('DYNAMODB_TABLE', 'wedding-photo-metadata')
COLLECTION_ID = os.getenv('REKOGNITION_COLLECTION', 'wedding-faces')


def create_metadata_table(dynamodb=None):
    """Create the photo metadata DynamoDB table"""

    if dynamodb is None:
        dynamodb = boto3.resource('dynamodb')

    # Check if table already exists
    try:
        table = dynamodb.Table(TABLE_NAME)
        table.load()
        print(f"✅ Table '{TABLE_NAME}' already exists")
        return True
    except ClientError as e:
        if e.response['Error']['Code'] == 'ResourceNotFoundException':
            print(f"Table '{TABLE_NAME}' does not exist, creating...")
        else:
            print(f"Error checking table existence: {e}")
            return False

    # Create table
    try:
        table = dynamodb.create_table(
            TableName=TABLE_NAME,
            AttributeDefinitions=[
                {
                    'AttributeName': 'photoId',
                    'AttributeType': 'S'
                },
                {
                    'AttributeName': 'uploadedAt',
                    'AttributeType': 'N'
                }
            ],
            KeySchema=[
                {
                    'AttributeName': 'photoId',
                    'KeyType': 'HASH'
                },
                {
                    'AttributeName': 'uploadedAt',
                    'KeyType': 'RANGE'
                }
            ],
            BillingMode='PAY_PER_REQUEST',
            Tags=[
                {
                    'Key': 'Project',
                    'Value': 'WeddingPhotos'
                }
            ]
        )

        # Wait for table to be created
        print("Creating table...")
        table.meta.client.get_waiter('table_exists').wait(TableName=TABLE_NAME)

        print(f"✅ Successfully created table '{TABLE_NAME}'")
        return True

    except ClientError as e:
        print(f"❌ Error creating table: {e}")
        return False


def create_face_collection(rekognition=None):
    """Create the Rekognition collection faces are indexed into"""

    if rekognition is None:
        rekognition = boto3.client('rekognition')

    try:
        rekognition.create_collection(CollectionId=COLLECTION_ID)
        print(f"✅ Successfully created collection '{COLLECTION_ID}'")
        return True
    except ClientError as e:
        if e.response['Error']['Code'] == 'ResourceAlreadyExistsException':
            print(f"✅ Collection '{COLLECTION_ID}' already exists")
            return True
        print(f"❌ Error creating collection: {e}")
        return False


def main():
    """Main function"""
    print("🔧 Creating wedding photo metadata resources")
    print("=" * 50)

    success = create_metadata_table() and create_face_collection()

    if success:
        print("\n✅ Setup completed successfully!")
        print("\nNext steps:")
        print("1. Set DYNAMODB_TABLE, S3_BUCKET and REKOGNITION_COLLECTION on both Lambda functions")
        print("2. Add an s3:ObjectCreated:* notification for the uploads/ prefix to the metadata Lambda")
    else:
        print("\n❌ Setup failed!")
        sys.exit(1)


if __name__ == "__main__":
    main()
