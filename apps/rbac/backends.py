"""
Email/password authentication backend.
"""
from django.contrib.auth.backends import BaseBackend
from django.contrib.auth import get_user_model


class EmailAuthBackend(BaseBackend):
    """
    Authenticate using email address instead of username.
    
    Used by AuthService.login through django.contrib.auth.authenticate.
    """
    
    def authenticate(self, request, username=None, password=None, **kwargs):
        """
        Authenticate user by email and password.
        
        Returns:
            Active User instance if credentials match, None otherwise
        """
        User = get_user_model()
        email = username or kwargs.get('email')
        
        if not email or not password:
            return None
        
        user = User.objects.by_email(email)
        if user is None:
            # Run the default password hasher once to reduce timing
            # difference between existing and non-existing users
            User().set_password(password)
            return None
        
        if user.check_password(password) and user.is_active:
            return user
        
        return None
    
    def get_user(self, user_id):
        User = get_user_model()
        return User.objects.select_related('role').filter(pk=user_id).first()
