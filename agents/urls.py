"""
URL configuration for agent call-state endpoints.
"""

from django.urls import path
from . import views

urlpatterns = [
    path('login/', views.agent_login, name='agent-login'),
    path('<int:agent_id>/state/', views.get_state, name='agent-state'),
    path('<int:agent_id>/status/', views.set_status, name='agent-status'),
    path('<int:agent_id>/active-campaign/', views.set_active_campaign, name='agent-active-campaign'),
    path('<int:agent_id>/dial/', views.dial, name='agent-dial'),
    path('<int:agent_id>/disposition/', views.disposition, name='agent-disposition'),
    path('<int:agent_id>/wrap-up/', views.wrap_up, name='agent-wrap-up'),
    path('<int:agent_id>/logout/', views.logout, name='agent-logout'),

    # Supervisor actions
    path('<int:agent_id>/force-pause/', views.force_pause, name='agent-force-pause'),
    path('<int:agent_id>/force-logout/', views.force_logout, name='agent-force-logout'),
]
