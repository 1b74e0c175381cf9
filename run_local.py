import os

import boto3
from moto import mock_aws

# 1. Mock Credentials (Must be set BEFORE any boto3 client is created)
os.environ['AWS_ACCESS_KEY_ID'] = 'testing'
os.environ['AWS_SECRET_ACCESS_KEY'] = 'testing'
os.environ['AWS_SECURITY_TOKEN'] = 'testing'
os.environ['AWS_SESSION_TOKEN'] = 'testing'
os.environ['AWS_DEFAULT_REGION'] = 'us-east-1'

from flask import jsonify, session

from donorstreak.models import ADMIN, AppUser
from donorstreak.web import create_app
from init_db import initialize


def setup_infrastructure():
    print(">>> Creating mocked donation tables...")
    store = initialize(boto3.resource('dynamodb', region_name='us-east-1'))

    # A signed-in admin so the review endpoints can be tried straight away
    store.create_user(AppUser(id='admin1', email='admin@example.com', name='Admin', role=ADMIN))

    sns = boto3.client('sns', region_name='us-east-1')
    topic = sns.create_topic(Name='donorstreak_topic')
    print(f">>> Mock Environment Ready. SNS Topic ARN: {topic['TopicArn']}")
    return store, topic['TopicArn']


if __name__ == '__main__':
    with mock_aws():
        store, topic_arn = setup_infrastructure()
        app = create_app({'SNS_TOPIC_ARN': topic_arn, 'LOG_LEVEL': 'DEBUG'}, store=store)

        @app.route('/dev/login/<user_id>')
        def dev_login(user_id):
            # Stands in for the real auth provider while running against moto
            session['user_id'] = user_id
            return jsonify({'user_id': user_id})

        print("\n>>> Starting Flask Server at http://localhost:5000")
        # use_reloader=False is mandatory to keep the mock state alive
        app.run(host='0.0.0.0', port=5000, debug=True, use_reloader=False)
