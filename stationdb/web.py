#!/usr/bin/env python3
"""
Station database query API
Read-only endpoints over the base cache and its manifest
"""

import logging

from flask import Flask, jsonify
from flask_cors import CORS

from .config import load_config
from .coverage import CoverageChecker
from .exceptions import ValidationError
from .manifest import load_manifest
from .storage import load_station_database

logger = logging.getLogger(__name__)


def create_app(config=None) -> Flask:
    """Create the query API for the files named in config"""
    config = config or load_config()

    app = Flask(__name__)
    CORS(app)
    app.config['STATIONDB'] = config

    def get_manifest():
        return load_manifest(config.manifest)

    def get_stations():
        return load_station_database(config.base_stations)

    def unavailable(e: ValidationError):
        logger.error(f"Data unavailable: {e}")
        return jsonify({'error': str(e)}), 503

    @app.route('/api/health')
    def health_check():
        """Health check endpoint"""
        try:
            stations = get_stations()
            return jsonify({
                'status': 'healthy',
                'database': 'available',
                'stations_count': len(stations),
                'manifest': config.manifest.exists()
            })
        except ValidationError as e:
            return jsonify({
                'status': 'error',
                'message': str(e)
            }), 503

    @app.route('/api/manifest')
    def get_manifest_document():
        """Full manifest document"""
        try:
            return jsonify(get_manifest())
        except ValidationError as e:
            return unavailable(e)

    @app.route('/api/stats')
    def get_stats():
        """Manifest statistics plus per-country counts"""
        try:
            manifest = get_manifest()
        except ValidationError as e:
            return unavailable(e)

        stats = dict(manifest['stats'])
        stats['countries'] = manifest['countries']
        stats['created'] = manifest['created']
        return jsonify(stats)

    @app.route('/api/coverage/market/<country>/<zip_code>')
    def market_coverage(country, zip_code):
        """Whether a market is already in the base cache"""
        try:
            checker = CoverageChecker.from_manifest(get_manifest())
        except ValidationError as e:
            return unavailable(e)

        return jsonify({
            'country': country.upper(),
            'zip': zip_code,
            'covered': checker.is_market_covered(country, zip_code)
        })

    @app.route('/api/coverage/lineup/<lineup_id>')
    def lineup_coverage(lineup_id):
        """Whether a lineup is already in the base cache"""
        try:
            checker = CoverageChecker.from_manifest(get_manifest())
        except ValidationError as e:
            return unavailable(e)

        return jsonify({
            'lineup_id': lineup_id,
            'covered': checker.is_lineup_covered(lineup_id)
        })

    @app.route('/api/station/<station_id>')
    def get_station_details(station_id):
        """Get a single station record"""
        try:
            stations = get_stations()
        except ValidationError as e:
            return unavailable(e)

        for station in stations:
            if station['stationId'] == station_id:
                return jsonify(station)
        return jsonify({'error': 'Station not found'}), 404

    return app
