from farmroute import create_app
from farmroute.celery_app import create_celery_app

flask_app = create_app()
celery = create_celery_app(flask_app)

# registers the shared tasks on this app
import farmroute.tasks.payout_tasks  # noqa: E402,F401
