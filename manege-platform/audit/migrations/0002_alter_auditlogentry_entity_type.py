from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("audit", "0001_initial"),
    ]

    operations = [
        migrations.AlterField(
            model_name="auditlogentry",
            name="entity_type",
            field=models.CharField(
                choices=[
                    ("User", "User"),
                    ("Reservation", "Reservation"),
                    ("Block", "Block"),
                    ("Resource", "Resource"),
                    ("Event", "Event"),
                ],
                max_length=20,
            ),
        ),
    ]
