"""
RBAC signals keeping the permission cache consistent.

The role service invalidates the cache explicitly on its own mutations.
These receivers cover changes made through any other path (shell, seed
command, ORM code elsewhere) so a stale permission set never outlives the
write that made it stale.
"""
from django.db.models.signals import m2m_changed, post_delete, post_save, pre_save
from django.dispatch import receiver

from apps.rbac.cache import get_permission_cache
from apps.rbac.models import Role, User


@receiver(pre_save, sender=User)
def remember_previous_role(sender, instance, **kwargs):
    """Record the stored role id so post_save can tell if it changed."""
    if instance.pk is None:
        instance._previous_role_id = None
        return
    instance._previous_role_id = (
        User.objects.filter(pk=instance.pk).values_list('role_id', flat=True).first()
    )


@receiver(post_save, sender=User)
def invalidate_on_role_assignment(sender, instance, created, **kwargs):
    if created:
        return
    if getattr(instance, '_previous_role_id', None) != instance.role_id:
        get_permission_cache().invalidate(instance.pk)


@receiver(post_delete, sender=User)
def invalidate_on_user_delete(sender, instance, **kwargs):
    get_permission_cache().invalidate(instance.pk)


@receiver(m2m_changed, sender=Role.permissions.through)
def invalidate_on_role_permissions_change(sender, instance, action, reverse, pk_set, **kwargs):
    """
    Invalidate holders of a role whose permission set changed.

    ``reverse`` is True when the change was made from the Permission side;
    ``pk_set`` then holds role ids (None for a clear).
    """
    if action not in ('post_add', 'post_remove', 'post_clear'):
        return

    cache = get_permission_cache()

    if not reverse:
        cache.invalidate_many(instance.users.values_list('pk', flat=True))
    elif pk_set:
        cache.invalidate_many(User.objects.filter(role_id__in=pk_set).values_list('pk', flat=True))
    else:
        cache.invalidate_all()
