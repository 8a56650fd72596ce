"""
AUTHENTICATION TESTS
Tests for user registration, login, logout, session handling and user management.

This test module covers:
- User signup with validation
- Login by username or email, with correct/incorrect credentials
- Logout functionality
- Protected pages redirecting anonymous visitors
- Registering, editing and deleting users

Test fixtures:
- app: Creates test Flask application with in-memory SQLite database
- client: Provides test client for making HTTP requests
"""

import pytest

from app import create_app, db, User, FinishedProduct, ProductionBatch


@pytest.fixture
def app():
    """
    Create and configure test Flask application.

    Uses in-memory SQLite database for isolation between tests.
    Enables testing mode to catch exceptions during test execution.
    """
    app = create_app({
        'TESTING': True,  # Enable Flask testing mode
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',  # In-memory database for speed and isolation
        'SECRET_KEY': 'test-secret',  # Fixed secret for consistent testing
    })

    with app.app_context():
        db.create_all()  # Create all database tables for testing
        yield app


@pytest.fixture
def client(app):
    """
    Create test client for making HTTP requests to the application.
    """
    return app.test_client()


def test_signup_and_login(client):
    """
    Test complete user authentication flow: signup -> login -> logout.

    Validates:
    1. User can create new account with valid credentials
    2. User can login with correct credentials and reach the dashboard
    3. User can logout and session is cleared
    """
    # *** TEST USER REGISTRATION ***
    resp = client.post('/signup', data={'username': 'alice', 'password': 'wonderland'}, follow_redirects=True)
    assert b'Account created successfully' in resp.data

    # *** TEST SUCCESSFUL LOGIN ***
    resp = client.post('/login', data={'username': 'alice', 'password': 'wonderland'}, follow_redirects=True)
    assert b'Green Bowl Foods Dashboard' in resp.data

    # *** TEST LOGOUT FUNCTIONALITY ***
    resp = client.get('/logout', follow_redirects=True)
    assert b'You have been logged out' in resp.data

    # Dashboard is protected again after logout
    resp = client.get('/', follow_redirects=True)
    assert b'You must be logged in to access that page' in resp.data


def test_signup_defaults_to_staff_role(client):
    client.post('/signup', data={'username': 'bob', 'password': 'pw', 'first_name': 'Bob'}, follow_redirects=True)

    with client.application.app_context():
        user = User.query.filter_by(username='bob').first()
        assert user.role == 'Staff'
        assert user.first_name == 'Bob'
        assert user.password_hash != 'pw'


def test_signup_rejects_duplicate_and_blank(client):
    client.post('/signup', data={'username': 'carol', 'password': 'pw'}, follow_redirects=True)

    resp = client.post('/signup', data={'username': 'carol', 'password': 'other'}, follow_redirects=True)
    assert b'Username already exists' in resp.data

    resp = client.post('/signup', data={'username': '', 'password': 'pw'}, follow_redirects=True)
    assert b'Username and password are required' in resp.data


def test_login_with_wrong_password(client):
    client.post('/signup', data={'username': 'dave', 'password': 'right'}, follow_redirects=True)

    resp = client.post('/login', data={'username': 'dave', 'password': 'wrong'}, follow_redirects=True)
    assert b'Invalid username or password' in resp.data


def test_login_with_email(client):
    client.post('/signup', data={'username': 'erin', 'password': 'pw'}, follow_redirects=True)
    with client.application.app_context():
        user = User.query.filter_by(username='erin').first()
        user.email = 'erin@greenbowl.com'
        db.session.commit()

    resp = client.post('/login', data={'username': 'erin@greenbowl.com', 'password': 'pw'}, follow_redirects=True)
    assert b'Green Bowl Foods Dashboard' in resp.data


def test_protected_pages_redirect_to_login(client):
    for path in ('/suppliers', '/batches', '/shipments/add', '/reports', '/users'):
        resp = client.get(path, follow_redirects=False)
        assert resp.status_code in (301, 302)
        assert '/login' in resp.headers['Location']


def test_register_edit_and_delete_user(client):
    client.post('/signup', data={'username': 'admin', 'password': 'pw'}, follow_redirects=True)
    client.post('/login', data={'username': 'admin', 'password': 'pw'}, follow_redirects=True)

    # *** REGISTER ***
    resp = client.post('/users/add', data={
        'username': 'worker', 'first_name': 'Wendy', 'last_name': 'Worker', 'email': 'wendy@greenbowl.com',
        'role': 'Staff', 'password': 'secret',
    }, follow_redirects=True)
    assert b'New user registered successfully!' in resp.data

    with client.application.app_context():
        worker = User.query.filter_by(username='worker').first()
        uid = worker.id
        old_hash = worker.password_hash

    # *** VALIDATION: role and email ***
    resp = client.post('/users/add', data={
        'username': 'bad', 'first_name': 'B', 'last_name': 'C', 'email': 'not-an-email', 'role': 'Owner',
        'password': 'x',
    }, follow_redirects=True)
    assert b'Invalid Email Address.' in resp.data
    assert b'Role must be' in resp.data

    # *** EDIT without a password keeps the old hash ***
    resp = client.post(f'/users/{uid}/edit', data={
        'username': 'worker', 'first_name': 'Wendy', 'last_name': 'Smith', 'email': 'wendy@greenbowl.com',
        'role': 'Admin', 'password': '',
    }, follow_redirects=True)
    assert b'User details updated successfully!' in resp.data
    with client.application.app_context():
        worker = db.session.get(User, uid)
        assert worker.last_name == 'Smith'
        assert worker.role == 'Admin'
        assert worker.password_hash == old_hash

    # *** DELETE ***
    resp = client.post(f'/users/{uid}/delete', follow_redirects=True)
    assert b'User removed from the system.' in resp.data
    with client.application.app_context():
        assert db.session.get(User, uid) is None


def test_delete_user_refused_while_referenced(client):
    client.post('/signup', data={'username': 'admin', 'password': 'pw'}, follow_redirects=True)
    client.post('/signup', data={'username': 'supervisor', 'password': 'pw'}, follow_redirects=True)

    with client.application.app_context():
        sup = User.query.filter_by(username='supervisor').first()
        product = FinishedProduct(product_name='Soup', sku='S-1', quantity_available=0, unit_price=2.0)
        db.session.add(product)
        db.session.flush()
        db.session.add(ProductionBatch(batch_number='B-1', finished_product_id=product.id, supervisor_id=sup.id))
        db.session.commit()
        sid = sup.id

    client.post('/login', data={'username': 'admin', 'password': 'pw'}, follow_redirects=True)
    resp = client.post(f'/users/{sid}/delete', follow_redirects=True)
    assert b'Cannot delete user' in resp.data
    with client.application.app_context():
        assert db.session.get(User, sid) is not None


def test_cannot_delete_own_account(client):
    client.post('/signup', data={'username': 'self', 'password': 'pw'}, follow_redirects=True)
    client.post('/login', data={'username': 'self', 'password': 'pw'}, follow_redirects=True)
    with client.application.app_context():
        uid = User.query.filter_by(username='self').first().id

    resp = client.post(f'/users/{uid}/delete', follow_redirects=True)
    assert b'You cannot delete your own account.' in resp.data
