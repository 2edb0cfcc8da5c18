import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("halls", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Reservation",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("start_time", models.DateTimeField()),
                ("end_time", models.DateTimeField()),
                ("purpose", models.CharField(choices=[("TRAINING", "Training"), ("LESSON", "Lesson"), ("OTHER", "Other")], max_length=20)),
                ("notes", models.TextField(blank=True)),
                ("status", models.CharField(choices=[("CONFIRMED", "Confirmed"), ("CANCELLED", "Cancelled"), ("IMPACTED", "Impacted by a block")], default="CONFIRMED", max_length=20)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancel_reason", models.CharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("resource", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="reservations", to="halls.resource")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="reservations", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["start_time"],
                "indexes": [
                    models.Index(fields=["resource", "status", "start_time"], name="reservation_timeline_idx"),
                    models.Index(fields=["user", "status"], name="reservation_user_status_idx"),
                ],
                "constraints": [models.CheckConstraint(condition=models.Q(("end_time__gt", models.F("start_time"))), name="reservation_end_after_start")],
            },
        ),
    ]
