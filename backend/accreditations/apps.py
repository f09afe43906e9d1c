from django.apps import AppConfig


class AccreditationsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "accreditations"
