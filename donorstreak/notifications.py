"""Donor and admin notifications published through Amazon SNS."""
import logging

import boto3
from botocore.exceptions import ClientError

from donorstreak.config import REGION
from donorstreak.models import format_date

logger = logging.getLogger(__name__)


class SnsNotifier:

    def __init__(self, topic_arn='', region=REGION, sns=None):
        self.topic_arn = topic_arn
        self.sns = sns or boto3.client('sns', region_name=region)

    def send(self, subject, message):
        """Publish to the topic. Returns False when nothing was delivered."""
        if not self.topic_arn:
            logger.info("No SNS topic configured, skipping notification %r", subject)
            return False
        try:
            self.sns.publish(TopicArn=self.topic_arn, Subject=subject, Message=message)
        except ClientError as e:
            logger.error("SNS Error: %s", e)
            return False
        return True


def milestone_message(year, donations):
    lines = [f"Date: {format_date(d.date)}, Hospital: {d.hospital}, Blood Type: {d.blood_type}"
             for d in donations]
    return "\n".join([
        f"Congratulations! You've reached {len(donations)} donations in {year}!",
        "Your donations:",
        *lines,
        "Thank you for your life-saving contributions!",
    ])


def reconciliation_message(appointment, donation_id, reason):
    return (f"Appointment {appointment.id} for donor {appointment.donor_id} was booked "
            f"but donation {donation_id or '(none)'} was not marked used: {reason}")
