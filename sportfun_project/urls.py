"""URL configuration for sportfun_project project."""

from django.urls import path, include

urlpatterns = [
    path('api/', include('portfolio_scan.urls')),
]
