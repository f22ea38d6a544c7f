"""Volume discount rules on plans and wider lease keys for setup locks."""

from __future__ import annotations

from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("billing", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="plan",
            name="discount_rules",
            field=models.JSONField(blank=True, default=list),
        ),
        migrations.AlterField(
            model_name="checkoutlock",
            name="checkout_id",
            field=models.CharField(max_length=80, unique=True),
        ),
    ]
