"""Django REST Framework views for the portfolio scan API."""

import logging

from django.apps import apps
from rest_framework import serializers, status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from src.api.exceptions import ChainProviderError

from .background import COMPLETED
from .serializers import ScanJobSerializer, ScanQuerySerializer, validate_address

logger = logging.getLogger(__name__)


def _app():
    return apps.get_app_config('portfolio_scan')


def _job_response(job, manager, http_status=status.HTTP_200_OK) -> Response:
    body = dict(ScanJobSerializer(job.to_dict()).data)
    if job.status == COMPLETED:
        body['snapshot'] = manager.result(job.id)
    return Response(body, status=http_status)


@api_view(['GET'])
def portfolio(request, address):
    """
    GET /api/portfolio/{address}/ - Reconstruct a wallet's portfolio.

    scan_mode=default runs synchronously under a soft deadline and returns the
    payload. scan_mode=full returns a job to poll (202), or the cached payload.
    """
    try:
        address = validate_address(address)
    except serializers.ValidationError as e:
        return Response({'error': e.detail}, status=status.HTTP_400_BAD_REQUEST)

    query = ScanQuerySerializer(data=request.query_params)
    query.is_valid(raise_exception=True)
    params = query.to_params(address)
    app = _app()

    if params.is_full:
        manager = app.job_manager
        cached = manager.cached_result(params)
        if cached is not None:
            return Response({'job_id': params.cache_key(), 'status': COMPLETED, 'snapshot': cached})
        job = manager.submit(params)
        http_status = status.HTTP_200_OK if job.status == COMPLETED else status.HTTP_202_ACCEPTED
        return _job_response(job, manager, http_status)

    try:
        payload = app.build_scanner().run(params)
    except ChainProviderError as e:
        logger.error(f'Scan of {address} failed: {e}')
        return Response({'error': str(e)}, status=status.HTTP_502_BAD_GATEWAY)
    return Response(payload)


@api_view(['GET'])
def scan_job_status(request, job_id):
    """
    GET /api/portfolio/jobs/{job_id}/ - Poll a full-scan job.
    """
    manager = _app().job_manager
    job = manager.get(job_id)
    if job is None:
        return Response({'error': f'Unknown job {job_id}'}, status=status.HTTP_404_NOT_FOUND)
    return _job_response(job, manager)
