from django.apps import AppConfig


class ShuttleConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "shuttle"
    verbose_name = "Buggy Shuttle Dispatch"
