from plankmarket import create_app
from plankmarket.celery_app import create_celery_app

# Worker entrypoint: celery -A celery_app.celery worker --beat
flask_app = create_app()
celery = create_celery_app(flask_app)
