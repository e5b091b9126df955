from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("mandates", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="activemandate",
            name="lease_token",
            field=models.CharField(blank=True, help_text="Identifies the scheduler pass holding the lease; outcome writes require it", max_length=32),
        ),
    ]
