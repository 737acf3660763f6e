from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/dialer/', include('dialer.urls')),
    path('api/agents/', include('agents.urls')),
]
