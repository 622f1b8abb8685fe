from tortoise import fields, models


class UserProfile(models.Model):
    """
    Local cache of user profile data owned by the account side.
    Updated only by the user event consumer (user.created, user.updated, user.deleted).
    """
    user_id = fields.BigIntField(pk=True, generated=False)
    username = fields.CharField(max_length=50)
    display_name = fields.CharField(max_length=100)
    email = fields.CharField(max_length=255)
    avatar_url = fields.CharField(max_length=500, null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "user_profiles"
