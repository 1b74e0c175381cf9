import boto3

from donorstreak.config import load_config
from donorstreak.models import Hospital
from donorstreak.store import DynamoStore, create_tables

HOSPITALS = [
    Hospital(id='hospital1', name='City Hospital', address='123 Main St, Nairobi'),
    Hospital(id='hospital2', name='General Medical Center', address='456 Health Ave, Mombasa'),
    Hospital(id='hospital3', name='Hope Clinic', address='789 Wellness Rd, Kisumu'),
]


def seed_hospitals(store):
    for hospital in HOSPITALS:
        store.put_hospital(hospital)
        print(f"Created entry for {hospital.name}")


def initialize(dynamodb=None, prefix=''):
    config = load_config()
    prefix = prefix or config['TABLE_PREFIX']
    # Ensure your local AWS CLI is configured or this is run on an EC2 with an IAM Role
    dynamodb = dynamodb or boto3.resource('dynamodb', region_name=config['AWS_REGION'])
    print("Initializing donation tables...")
    create_tables(dynamodb, prefix)
    store = DynamoStore(prefix=prefix, dynamodb=dynamodb)
    seed_hospitals(store)
    return store


if __name__ == "__main__":
    initialize()
