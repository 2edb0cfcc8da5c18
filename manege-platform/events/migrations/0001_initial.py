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
            name="Event",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=200)),
                ("description", models.TextField(blank=True)),
                ("start_time", models.DateTimeField()),
                ("end_time", models.DateTimeField()),
                ("visibility", models.CharField(choices=[("PUBLIC", "Public"), ("MEMBERS", "Members"), ("ADMIN", "Admin")], default="PUBLIC", max_length=10)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("created_by", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="created_events", to=settings.AUTH_USER_MODEL)),
                ("resources", models.ManyToManyField(blank=True, related_name="events", to="halls.resource")),
            ],
            options={
                "ordering": ["start_time", "id"],
                "indexes": [models.Index(fields=["visibility", "start_time"], name="event_visibility_start_idx")],
                "constraints": [models.CheckConstraint(condition=models.Q(("end_time__gt", models.F("start_time"))), name="event_end_after_start")],
            },
        ),
    ]
