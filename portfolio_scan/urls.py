"""URL configuration for the portfolio scan API."""

from django.urls import path

from . import views

urlpatterns = [
    # Job polling - MUST be before the address route so 'jobs' is not taken for an address
    path('portfolio/jobs/<str:job_id>/', views.scan_job_status, name='portfolio-job-status'),
    path('portfolio/<str:address>/', views.portfolio, name='portfolio'),
]
