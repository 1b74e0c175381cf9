"""Production entry point: DynamoDB tables and the SNS topic come from the environment."""
from donorstreak.web import create_app

app = create_app()

if __name__ == '__main__':
    app.run(host='0.0.0.0', port=5000)
