from django.db import models


class TelegramAdmin(models.Model):
    """Чат сотрудника, куда приходят служебные алерты (блокировки площадок)."""

    telegram_user_id = models.BigIntegerField("Telegram ID", unique=True)
    full_name = models.CharField("Name", max_length=150, blank=True)

    is_active = models.BooleanField("Active", default=True)
    created_at = models.DateTimeField("Created", auto_now_add=True)

    class Meta:
        verbose_name = "Telegram admin"
        verbose_name_plural = "Telegram admins"
        ordering = ["full_name", "telegram_user_id"]

    def __str__(self):
        return self.full_name or str(self.telegram_user_id)
