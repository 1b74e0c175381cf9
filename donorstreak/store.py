"""DynamoDB-backed document store for users, donations, hospitals and appointments."""
import logging

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from donorstreak.config import REGION, table_names
from donorstreak.errors import InvalidTransition, NotFound, RepositoryError
from donorstreak.models import (
    Appointment, AppUser, Donation, Hospital, PENDING, USED, APPROVED, decode_all, format_date,
)

logger = logging.getLogger(__name__)

CONDITION_FAILED = 'ConditionalCheckFailedException'
TRANSACTION_CANCELED = 'TransactionCanceledException'
# per-item code inside a cancelled transaction; 'None' for items that passed
ITEM_CONDITION_FAILED = 'ConditionalCheckFailed'


def _error_code(error):
    return error.response.get('Error', {}).get('Code')


def _cancellation_codes(error):
    return [reason.get('Code') for reason in error.response.get('CancellationReasons', [])]


class DynamoStore:
    """CRUD and filtered queries over the four tables.

    Status changes are conditional updates ("only if status is still X"), so
    an admin approving a donation and a donor spending it cannot both win.
    """

    def __init__(self, region=REGION, prefix='', dynamodb=None):
        self.dynamodb = dynamodb or boto3.resource('dynamodb', region_name=region)
        self.names = table_names(prefix)
        self.users_table = self.dynamodb.Table(self.names['users'])
        self.donations_table = self.dynamodb.Table(self.names['donations'])
        self.hospitals_table = self.dynamodb.Table(self.names['hospitals'])
        self.appointments_table = self.dynamodb.Table(self.names['appointments'])

    # --- Helper Functions ---

    def _scan(self, table, condition=None):
        kwargs = {}
        if condition is not None:
            kwargs['FilterExpression'] = condition
        items = []
        try:
            while True:
                res = table.scan(**kwargs)
                items.extend(res.get('Items', []))
                if 'LastEvaluatedKey' not in res:
                    break
                kwargs['ExclusiveStartKey'] = res['LastEvaluatedKey']
        except ClientError as e:
            logger.error("Scan of %s failed: %s", table.name, e)
            raise RepositoryError(f"Failed to read {table.name}: {e}") from e
        logger.debug("Fetched %d items from %s", len(items), table.name)
        return items

    def _get(self, table, key):
        try:
            res = table.get_item(Key={'id': key})
        except ClientError as e:
            logger.error("Read of %s/%s failed: %s", table.name, key, e)
            raise RepositoryError(f"Failed to read {table.name}: {e}") from e
        return res.get('Item')

    def _put(self, table, item, **kwargs):
        try:
            table.put_item(Item=item, **kwargs)
        except ClientError as e:
            if _error_code(e) == CONDITION_FAILED:
                raise
            logger.error("Write to %s failed: %s", table.name, e)
            raise RepositoryError(f"Failed to write {table.name}: {e}") from e

    # --- Users ---

    def create_user(self, user):
        try:
            self._put(self.users_table, user.to_item(), ConditionExpression=Attr('id').not_exists())
        except ClientError as e:
            raise InvalidTransition(f"User {user.id} already exists.") from e

    def get_user(self, user_id):
        item = self._get(self.users_table, user_id)
        if not item:
            return None
        return AppUser.from_item(item)

    def list_users(self):
        return decode_all(self._scan(self.users_table), AppUser.from_item)

    def set_user_active(self, user_id, expected, active):
        self._update(
            self.users_table, user_id,
            UpdateExpression="set isActive = :v",
            ConditionExpression=Attr('isActive').eq(expected),
            ExpressionAttributeValues={':v': active},
            conflict=f"User {user_id} status changed; reload and try again.",
        )

    def set_milestone_flag(self, user_id, value):
        self._update(
            self.users_table, user_id,
            UpdateExpression="set hasNotifiedFourDonations = :v",
            ConditionExpression=Attr('id').exists(),
            ExpressionAttributeValues={':v': value},
            conflict=f"User {user_id} not found.",
        )

    # --- Donations ---

    def create_donation(self, donation):
        # ids are client-generated, so repeating a failed put is harmless
        self._put(self.donations_table, donation.to_item())

    def get_donation(self, donation_id):
        item = self._get(self.donations_table, donation_id)
        if not item:
            raise NotFound(f"Donation {donation_id} not found.")
        return Donation.from_item(item)

    def query_donations(self, donor_id=None, date_range=None, statuses=None):
        condition = None
        if donor_id is not None:
            condition = Attr('donorId').eq(donor_id)
        if date_range is not None:
            start, end = date_range
            between = Attr('date').between(format_date(start), format_date(end))
            condition = between if condition is None else condition & between
        if statuses:
            status_in = Attr('status').is_in(list(statuses))
            condition = status_in if condition is None else condition & status_in
        return decode_all(self._scan(self.donations_table, condition), Donation.from_item)

    def update_status(self, donation_id, expected, new_status):
        """Move a donation from ``expected`` to ``new_status`` or fail with InvalidTransition."""
        self._update(
            self.donations_table, donation_id,
            UpdateExpression="set #s = :v",
            ConditionExpression=Attr('status').eq(expected),
            ExpressionAttributeNames={'#s': 'status'},
            ExpressionAttributeValues={':v': new_status},
            conflict=f"Donation {donation_id} is no longer {expected}.",
        )

    # --- Hospitals ---

    def put_hospital(self, hospital):
        self._put(self.hospitals_table, hospital.to_item())

    def get_hospital(self, hospital_id):
        item = self._get(self.hospitals_table, hospital_id)
        if not item:
            raise NotFound(f"Hospital {hospital_id} not found.")
        return Hospital.from_item(item)

    def list_hospitals(self):
        return decode_all(self._scan(self.hospitals_table), Hospital.from_item)

    # --- Appointments ---

    def create_appointment(self, appointment):
        self._put(self.appointments_table, appointment.to_item())

    def list_appointments(self, donor_id):
        items = self._scan(self.appointments_table, Attr('donorId').eq(donor_id))
        return decode_all(items, Appointment.from_item)

    def book_with_donation(self, appointment, donation_id):
        """Write the appointment and spend the donation in one transaction.

        Returns False when the donation was no longer approved; nothing is
        written in that case. Any other cancellation is a RepositoryError.
        """
        client = self.dynamodb.meta.client
        try:
            client.transact_write_items(TransactItems=[
                {'Put': {
                    'TableName': self.names['appointments'],
                    'Item': appointment.to_item(),
                    'ConditionExpression': 'attribute_not_exists(#id)',
                    'ExpressionAttributeNames': {'#id': 'id'},
                }},
                {'Update': {
                    'TableName': self.names['donations'],
                    'Key': {'id': donation_id},
                    'UpdateExpression': 'set #s = :used',
                    'ConditionExpression': '#s = :approved',
                    'ExpressionAttributeNames': {'#s': 'status'},
                    'ExpressionAttributeValues': {':used': USED, ':approved': APPROVED},
                }},
            ])
        except ClientError as e:
            if _error_code(e) != TRANSACTION_CANCELED:
                logger.error("Booking transaction failed: %s", e)
                raise RepositoryError(f"Failed to book appointment: {e}") from e
            codes = _cancellation_codes(e)
            if codes[1:2] == [ITEM_CONDITION_FAILED]:
                logger.info("Donation %s was spent before booking could use it", donation_id)
                return False
            logger.error("Booking transaction for donation %s cancelled: %s", donation_id, codes)
            raise RepositoryError(f"Failed to book appointment: {e}") from e
        return True

    def approve_donation(self, donation_id, donor_id, version):
        """Approve a pending donation and bump the donor's approval version together.

        The donor update only succeeds while ``approvalVersion`` still equals
        ``version``, so a count taken at that version is still the count when
        the write lands. Returns False when another approval got there first;
        raises InvalidTransition when the donation is no longer pending.
        """
        if version:
            guard = 'attribute_exists(#id) AND #v = :v'
        else:
            guard = 'attribute_exists(#id) AND (attribute_not_exists(#v) OR #v = :v)'
        client = self.dynamodb.meta.client
        try:
            client.transact_write_items(TransactItems=[
                {'Update': {
                    'TableName': self.names['donations'],
                    'Key': {'id': donation_id},
                    'UpdateExpression': 'set #s = :approved',
                    'ConditionExpression': '#s = :pending',
                    'ExpressionAttributeNames': {'#s': 'status'},
                    'ExpressionAttributeValues': {':approved': APPROVED, ':pending': PENDING},
                }},
                {'Update': {
                    'TableName': self.names['users'],
                    'Key': {'id': donor_id},
                    'UpdateExpression': 'set #v = :next',
                    'ConditionExpression': guard,
                    'ExpressionAttributeNames': {'#id': 'id', '#v': 'approvalVersion'},
                    'ExpressionAttributeValues': {':v': version, ':next': version + 1},
                }},
            ])
        except ClientError as e:
            if _error_code(e) != TRANSACTION_CANCELED:
                logger.error("Approval transaction failed: %s", e)
                raise RepositoryError(f"Failed to approve donation: {e}") from e
            codes = _cancellation_codes(e)
            if codes[:1] == [ITEM_CONDITION_FAILED]:
                raise InvalidTransition(f"Donation {donation_id} is no longer {PENDING}.") from e
            if codes[1:2] == [ITEM_CONDITION_FAILED]:
                logger.info("Approval version for %s moved past %d", donor_id, version)
                return False
            logger.error("Approval transaction for donation %s cancelled: %s", donation_id, codes)
            raise RepositoryError(f"Failed to approve donation: {e}") from e
        return True

    def _update(self, table, key, conflict, **kwargs):
        try:
            table.update_item(Key={'id': key}, **kwargs)
        except ClientError as e:
            if _error_code(e) == CONDITION_FAILED:
                raise InvalidTransition(conflict) from e
            logger.error("Update of %s/%s failed: %s", table.name, key, e)
            raise RepositoryError(f"Failed to update {table.name}: {e}") from e


def create_tables(dynamodb, prefix=''):
    """Create the four tables (all keyed by ``id``) and wait until they exist."""
    tables = []
    for name in table_names(prefix).values():
        table = dynamodb.create_table(
            TableName=name,
            KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
            AttributeDefinitions=[{'AttributeName': 'id', 'AttributeType': 'S'}],
            ProvisionedThroughput={'ReadCapacityUnits': 5, 'WriteCapacityUnits': 5},
        )
        table.wait_until_exists()
        logger.info("Created table %s", name)
        tables.append(table)
    return tables
