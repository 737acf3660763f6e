"""
URL configuration for Dialer API endpoints.
"""

from django.urls import path
from . import views

urlpatterns = [
    # Campaign endpoints
    path('campaigns/', views.list_campaigns, name='list_campaigns'),
    path('campaigns/create/', views.create_campaign, name='create_campaign'),
    path('campaigns/<int:campaign_id>/update/', views.update_campaign, name='update_campaign'),
    path('campaigns/<int:campaign_id>/delete/', views.delete_campaign, name='delete_campaign'),
    path('campaigns/<int:campaign_id>/stats/', views.get_campaign_stats, name='campaign_stats'),
    path('campaigns/<int:campaign_id>/contacts/import/', views.import_contacts, name='import_contacts'),
    path('campaigns/<int:campaign_id>/recycle/', views.recycle_contacts, name='recycle_contacts'),

    # Contact endpoints
    path('contacts/next/', views.next_contact, name='next_contact'),
    path('contacts/<int:contact_id>/qualify/', views.qualify_contact, name='qualify_contact'),
    path('contacts/<int:contact_id>/release/', views.release_contact, name='release_contact'),
    path('contacts/<int:contact_id>/notes/', views.add_contact_note, name='add_contact_note'),

    # Personal callbacks
    path('callbacks/', views.list_callbacks, name='list_callbacks'),
    path('callbacks/<int:callback_id>/status/', views.update_callback_status, name='update_callback_status'),
]
