"""
PRODUCTION TESTS
Tests for production batches and everything attached to them.

This test module covers:
- Scheduling and editing batches (supervisor is the signed-in user)
- Ingredient consumption deducting raw material stock, and shortages
- Finishing a batch adding output to finished goods, exactly once
- Production stages and x-ray checks
- Deleting a batch together with its children
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from app import (create_app, db, User, Supplier, RawMaterial, FinishedProduct, ProductionBatch,
                 ProductionMaterial, ProductionStage, XRayCheck)


@pytest.fixture
def app():
    """
    Create test Flask application with in-memory database.
    """
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SECRET_KEY': 'test-secret',
    })

    with app.app_context():
        db.create_all()
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def stock(client):
    """
    Sign in and create one supplier, one raw material lot (100 Kg) and one
    finished product (10 units). Returns their ids.
    """
    client.post('/signup', data={'username': 'chef', 'password': 'pw'}, follow_redirects=True)
    client.post('/login', data={'username': 'chef', 'password': 'pw'}, follow_redirects=True)

    with client.application.app_context():
        supplier = Supplier(supplier_name='Grain Masters Inc.', email='s@grain.com')
        db.session.add(supplier)
        db.session.flush()
        material = RawMaterial(material_name='Quinoa (White)', lot_number='Q-9921', quantity_in_stock=100.0,
                               unit='Kg', expiry_date=date.today() + timedelta(days=365), supplier_id=supplier.id)
        product = FinishedProduct(product_name='Zesty Quinoa Salad', sku='GBF-001', quantity_available=10,
                                  unit_price=12.5)
        db.session.add_all([material, product])
        db.session.commit()
        return {'material_id': material.id, 'product_id': product.id}


def _schedule(client, product_id, number='B-100', **extra):
    data = {'batch_number': number, 'production_date': date.today().isoformat(),
            'finished_product_id': str(product_id), 'target_quantity': '60', 'quantity_produced': '50',
            'downtime_minutes': '15'}
    data.update(extra)
    resp = client.post('/batches/add', data=data, follow_redirects=True)
    with client.application.app_context():
        batch = ProductionBatch.query.filter_by(batch_number=number).first()
        return resp, (batch.id if batch else None)


def test_schedule_batch_sets_supervisor_and_default_status(client, stock):
    resp, bid = _schedule(client, stock['product_id'])
    assert b'Production batch scheduled successfully!' in resp.data

    with client.application.app_context():
        batch = db.session.get(ProductionBatch, bid)
        assert batch.status == 'Planned'
        assert batch.supervisor.username == 'chef'
        assert batch.end_date is None


def test_batch_validation(client, stock):
    _schedule(client, stock['product_id'], number='B-1')

    resp, _ = _schedule(client, stock['product_id'], number='B-1', downtime_minutes='2000', status='Exploded')
    assert b'Another batch already uses that Batch Number.' in resp.data
    assert b'Downtime must be between 0 and 1440 minutes.' in resp.data
    assert b'Invalid Status.' in resp.data

    with client.application.app_context():
        assert ProductionBatch.query.count() == 1


def test_batch_search(client, stock):
    _schedule(client, stock['product_id'], number='QUINOA-7')
    resp = client.get('/batches?q=zesty')
    assert b'QUINOA-7' in resp.data
    resp = client.get('/batches?q=nothing-matches')
    assert b'QUINOA-7' not in resp.data


def test_add_ingredient_deducts_raw_material(client, stock):
    _, bid = _schedule(client, stock['product_id'])

    resp = client.post(f'/batches/{bid}/materials/add', data={
        'raw_material_id': str(stock['material_id']), 'quantity_used': '40',
    }, follow_redirects=True)
    assert b'Ingredient added and Inventory updated!' in resp.data

    with client.application.app_context():
        assert db.session.get(RawMaterial, stock['material_id']).quantity_in_stock == 60
        assert ProductionMaterial.query.filter_by(production_batch_id=bid).count() == 1


def test_add_ingredient_refuses_shortage(client, stock):
    """
    Requesting more than the lot holds is refused and nothing changes.
    """
    _, bid = _schedule(client, stock['product_id'])

    resp = client.post(f'/batches/{bid}/materials/add', data={
        'raw_material_id': str(stock['material_id']), 'quantity_used': '150',
    }, follow_redirects=True)
    assert b'Not enough stock! We only have 100 Kg' in resp.data

    with client.application.app_context():
        assert db.session.get(RawMaterial, stock['material_id']).quantity_in_stock == 100
        assert ProductionMaterial.query.count() == 0


def test_fractional_lot_can_be_used_up_exactly(client, stock):
    """
    A 0.3 Kg lot drawn down by 0.1 and then 0.2 ends at exactly zero
    instead of refusing the last draw over a rounding remainder.
    """
    _, bid = _schedule(client, stock['product_id'])
    with client.application.app_context():
        saffron = RawMaterial(material_name='Saffron', lot_number='SF-003', quantity_in_stock=Decimal('0.3'),
                              unit='Kg', expiry_date=date.today() + timedelta(days=365),
                              supplier_id=db.session.get(RawMaterial, stock['material_id']).supplier_id)
        db.session.add(saffron)
        db.session.commit()
        saffron_id = saffron.id

    for used in ('0.1', '0.2'):
        resp = client.post(f'/batches/{bid}/materials/add', data={
            'raw_material_id': str(saffron_id), 'quantity_used': used,
        }, follow_redirects=True)
        assert b'Ingredient added and Inventory updated!' in resp.data

    with client.application.app_context():
        assert db.session.get(RawMaterial, saffron_id).quantity_in_stock == 0
        assert ProductionMaterial.query.filter_by(raw_material_id=saffron_id).count() == 2


def test_small_ingredient_quantities_are_not_rounded_on_display(client, stock):
    _, bid = _schedule(client, stock['product_id'])
    client.post(f'/batches/{bid}/materials/add', data={
        'raw_material_id': str(stock['material_id']), 'quantity_used': '0.005',
    }, follow_redirects=True)

    resp = client.get(f'/batches/{bid}')
    assert b'<td>0.005</td>' in resp.data

    resp = client.get(f"/raw-materials/{stock['material_id']}")
    assert b'99.995' in resp.data


def test_finish_batch_adds_output_once(client, stock):
    _, bid = _schedule(client, stock['product_id'])

    resp = client.post(f'/batches/{bid}/finish', follow_redirects=True)
    assert b'Batch Completed! Added 50 units to Inventory.' in resp.data

    with client.application.app_context():
        batch = db.session.get(ProductionBatch, bid)
        assert batch.status == 'Completed'
        assert batch.end_date is not None
        assert db.session.get(FinishedProduct, stock['product_id']).quantity_available == 60

    # *** A second finish is refused and stock does not move ***
    resp = client.post(f'/batches/{bid}/finish', follow_redirects=True)
    assert b'This batch is already closed.' in resp.data
    with client.application.app_context():
        assert db.session.get(FinishedProduct, stock['product_id']).quantity_available == 60


def test_finish_cancelled_batch_is_refused(client, stock):
    _, bid = _schedule(client, stock['product_id'], status='Cancelled')

    resp = client.post(f'/batches/{bid}/finish', follow_redirects=True)
    assert b'This batch is already closed.' in resp.data
    with client.application.app_context():
        assert db.session.get(FinishedProduct, stock['product_id']).quantity_available == 10


def test_stage_add_edit_and_time_validation(client, stock):
    _, bid = _schedule(client, stock['product_id'])

    resp = client.post(f'/batches/{bid}/stages/add', data={
        'stage_name': 'Cooking', 'start_time': '2026-03-01T08:00', 'end_time': '2026-03-01T07:00',
        'temperature_celsius': '95',
    }, follow_redirects=True)
    assert b'End Time cannot be before Start Time.' in resp.data

    resp = client.post(f'/batches/{bid}/stages/add', data={
        'stage_name': 'Boiling', 'start_time': '2026-03-01T08:00', 'temperature_celsius': '500',
    }, follow_redirects=True)
    assert b'Stage Name is required.' in resp.data
    assert b'Enter a valid temperature (-20 to 200).' in resp.data

    resp = client.post(f'/batches/{bid}/stages/add', data={
        'stage_name': 'Cooking', 'start_time': '2026-03-01T08:00', 'end_time': '2026-03-01T09:30',
        'temperature_celsius': '95.5', 'notes': 'Core temp reached',
    }, follow_redirects=True)
    assert b'Production stage created successfully.' in resp.data
    assert b'Core temp reached' in resp.data

    with client.application.app_context():
        stage = ProductionStage.query.filter_by(production_batch_id=bid).first()
        sid = stage.id
        assert stage.temperature_celsius == 95.5

    resp = client.post(f'/stages/{sid}/edit', data={
        'stage_name': 'Cooling', 'start_time': '2026-03-01T10:00', 'temperature_celsius': '4',
    }, follow_redirects=True)
    assert b'Production stage updated successfully.' in resp.data
    with client.application.app_context():
        stage = db.session.get(ProductionStage, sid)
        assert stage.stage_name == 'Cooling'
        assert stage.end_time is None


def test_xray_check_records_operator(client, stock):
    _, bid = _schedule(client, stock['product_id'])

    resp = client.post('/xray-checks/add', data={
        'production_batch_id': str(bid), 'result': 'Fail', 'comments': 'Metal fragment detected',
    }, follow_redirects=True)
    assert b'The X-Ray Inspection was created successfully!' in resp.data

    resp = client.post('/xray-checks/add', data={'production_batch_id': str(bid), 'result': 'Maybe'},
                       follow_redirects=True)
    assert b"Result must be" in resp.data

    with client.application.app_context():
        check = XRayCheck.query.one()
        assert check.operator.username == 'chef'
        assert check.result == 'Fail'
        cid = check.id

    resp = client.get(f'/batches/{bid}')
    assert b'Metal fragment detected' in resp.data

    resp = client.post(f'/xray-checks/{cid}/delete', follow_redirects=True)
    assert b'X-Ray Inspection deleted.' in resp.data


def test_delete_batch_removes_children_without_restoring_stock(client, stock):
    _, bid = _schedule(client, stock['product_id'])
    client.post(f'/batches/{bid}/materials/add', data={
        'raw_material_id': str(stock['material_id']), 'quantity_used': '25',
    }, follow_redirects=True)
    client.post(f'/batches/{bid}/stages/add', data={
        'stage_name': 'Mixing', 'start_time': '2026-03-01T08:00', 'temperature_celsius': '20',
    }, follow_redirects=True)
    client.post('/xray-checks/add', data={'production_batch_id': str(bid), 'result': 'Pass'}, follow_redirects=True)

    resp = client.post(f'/batches/{bid}/delete', follow_redirects=True)
    assert b'Batch record deleted.' in resp.data

    with client.application.app_context():
        assert db.session.get(ProductionBatch, bid) is None
        assert ProductionMaterial.query.count() == 0
        assert ProductionStage.query.count() == 0
        assert XRayCheck.query.count() == 0
        # Consumed ingredients stay consumed
        assert db.session.get(RawMaterial, stock['material_id']).quantity_in_stock == 75
        assert User.query.filter_by(username='chef').count() == 1
