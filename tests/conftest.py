"""
Community Era - Test Configuration and Fixtures
"""
import os
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

# Set testing environment
os.environ.pop('DATABASE_URL', None)
os.environ['JWT_SECRET'] = 'test-jwt-secret-for-testing-only'

from database import create_document, ensure_indexes, get_db
from main import app, create_token, pwd_context

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def mongo():
    """Fresh in-memory database for each test"""
    database = mongomock.MongoClient()['community_era_test']
    ensure_indexes(database)
    return database


@pytest.fixture
def reports(mongo):
    return mongo['report']


@pytest.fixture
def make_report(reports):
    """Insert a report directly; each call is one minute newer than the last"""
    counter = {'n': 0}

    def _make(category='road', lat=10.0, lng=20.0, status='open', votes=0, images=None, parent=None):
        counter['n'] += 1
        doc = {
            'title': f'Report {counter["n"]}',
            'description': 'Something needs fixing here',
            'category': category,
            'severity': 'medium',
            'severityRank': 2,
            'status': status,
            'location': {'address': '', 'coordinates': {'lat': lat, 'lng': lng}},
            'reportedBy': 'seed',
            'votes': votes,
            'voters': [],
            'images': images or [],
            'parentReport': parent,
            'createdAt': BASE_TIME + timedelta(minutes=counter['n']),
        }
        reports.insert_one(doc)
        return doc

    return _make


@pytest.fixture
def client(mongo):
    """Create test client with database override"""
    app.dependency_overrides[get_db] = lambda: mongo
    yield TestClient(app)
    app.dependency_overrides.clear()


def _insert_user(mongo, username, email, role):
    user = {
        'username': username,
        'email': email,
        'role': role,
        'password_hash': pwd_context.hash('testpassword123'),
        'is_active': True,
    }
    create_document(mongo, 'user', user)
    return user


@pytest.fixture
def test_user(mongo):
    return _insert_user(mongo, 'citizen', 'citizen@communityera.org', 'user')


@pytest.fixture
def admin_user(mongo):
    return _insert_user(mongo, 'admin', 'admin@communityera.org', 'admin')


@pytest.fixture
def auth_headers(test_user):
    token = create_token(test_user['email'], test_user['role'])
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def admin_headers(admin_user):
    token = create_token(admin_user['email'], admin_user['role'])
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def report_payload():
    def _payload(category='road', lat=12.3456, lng=77.6543, **extra):
        body = {
            'title': 'Pothole on main road',
            'description': 'Large pothole near the bus stop',
            'category': category,
            'location': {'address': 'MG Road', 'coordinates': {'lat': lat, 'lng': lng}},
        }
        body.update(extra)
        return body

    return _payload
