from django.conf import settings
from django.db.models.signals import post_save
from django.dispatch import receiver

from .models import UserProfile


@receiver(post_save, sender=settings.AUTH_USER_MODEL)
def create_user_profile(sender, instance, created, **kwargs):
    if created:
        # superusers made from the shell get admin API rights too
        role = UserProfile.ROLE_ADMIN if instance.is_superuser else UserProfile.ROLE_CUSTOMER
        UserProfile.objects.get_or_create(user=instance, defaults={"role": role})
