import django.db.models.deletion
from django.conf import settings
from django.db import migrations
from django.db import models


class Migration(migrations.Migration):
    dependencies = [
        ("billing", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.AddField(
            model_name="refundrequest",
            name="resolved_by",
            field=models.ForeignKey(
                blank=True,
                help_text="Staff member who approved or denied a reviewed request.",
                null=True,
                on_delete=django.db.models.deletion.SET_NULL,
                related_name="resolved_refund_requests",
                to=settings.AUTH_USER_MODEL,
            ),
        ),
    ]
