from celery import Celery, Task


def beat_schedule(config):
    return {
        "expire-pending-payments": {
            "task": "marketpay.workers.tasks.expire_pending_payments",
            "schedule": float(config.get("PAYMENT_SWEEP_INTERVAL_SECONDS", 30)),
        },
        "retry-subscription-provisioning": {
            "task": "marketpay.workers.tasks.retry_subscription_provisioning",
            "schedule": 300.0,
        },
        "expire-lapsed-subscriptions": {
            "task": "marketpay.workers.tasks.expire_lapsed_subscriptions",
            "schedule": 3600.0,
        },
    }


def celery_init_app(app):
    class FlaskTask(Task):
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return self.run(*args, **kwargs)

    celery_app = Celery(app.name, task_cls=FlaskTask)
    celery_app.config_from_object(app.config["CELERY"])
    celery_app.conf.update(
        beat_schedule=beat_schedule(app.config),
        include=["marketpay.workers.tasks"],
    )
    celery_app.set_default()
    app.extensions["celery"] = celery_app
    return celery_app
