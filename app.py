# Flask Food Traceability System
# This file contains the main Flask application: the relational models, the
# application factory and the routes that track food from supplier receipt
# through production batches, quality checks, shipments and invoices.

import os
import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from functools import reduce, wraps

import click
from dotenv import load_dotenv
from email_validator import EmailNotValidError, validate_email
from flask import Flask, render_template, request, redirect, url_for, flash, session, abort
from flask import current_app, g  # Application context helpers
from flask_sqlalchemy import SQLAlchemy  # ORM for database operations
from sqlalchemy import inspect, or_, text, update
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash, check_password_hash  # Password security

# Initialize SQLAlchemy database instance
# This will be configured and bound to the Flask app later
db = SQLAlchemy()

# Allowed values for the status-like columns
USER_ROLES = ('Admin', 'Staff')
UNITS = ('Kg', 'Liters', 'Units')
BATCH_STATUSES = ('Planned', 'In Progress', 'Completed', 'QA Hold', 'Cancelled')
CLOSED_BATCH_STATUSES = ('Completed', 'Cancelled')
STAGE_TYPES = ('Mixing', 'Cooking', 'Retorting', 'Cooling', 'Packaging')
XRAY_RESULTS = ('Pass', 'Fail')
SHIPMENT_STATUSES = ('Pending', 'Shipped', 'Delivered', 'Cancelled')
INVOICE_STATUSES = ('Paid', 'Unpaid', 'Overdue')
# Shown at their own precision instead of as money
QUANTITY_FIELDS = ('quantity_in_stock', 'quantity_used', 'quantity_received')

PHONE_RE = re.compile(r'^\+?[0-9 ()\-.]{7,20}$')


# ==================== DATABASE MODELS ====================

class User(db.Model):
    """
    Staff account used to sign in and to stamp who supervised, inspected,
    received or approved a record.
    """
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=True)
    first_name = db.Column(db.String(50), nullable=True)
    last_name = db.Column(db.String(50), nullable=True)
    role = db.Column(db.String(10), nullable=False, default='Staff')  # Admin or Staff
    password_hash = db.Column(db.String(256), nullable=False)

    def set_password(self, password):
        """Hash and store the user's password."""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def full_name(self):
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.username


class Supplier(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    supplier_name = db.Column(db.String(100), nullable=False)
    contact_person = db.Column(db.String(100), nullable=True)
    phone = db.Column(db.String(30), nullable=True)
    email = db.Column(db.String(120), nullable=False)  # Needed for purchase orders


class Customer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    customer_name = db.Column(db.String(100), nullable=False)  # Company name
    contact_name = db.Column(db.String(100), nullable=True)
    email = db.Column(db.String(120), nullable=False)  # Needed for invoicing
    phone = db.Column(db.String(30), nullable=True)
    billing_address = db.Column(db.String(200), nullable=True)


class RawMaterial(db.Model):
    """
    Ingredient lot held in the warehouse.
    Lot number and expiry date make each lot traceable back to its supplier.
    """
    id = db.Column(db.Integer, primary_key=True)
    material_name = db.Column(db.String(100), nullable=False)
    lot_number = db.Column(db.String(50), nullable=False, index=True)
    quantity_in_stock = db.Column(db.Numeric(18, 4), nullable=False, default=0)  # Never negative
    unit = db.Column(db.String(20), nullable=False, default='Kg')
    expiry_date = db.Column(db.Date, nullable=False)
    supplier_id = db.Column(db.Integer, db.ForeignKey('supplier.id'), nullable=False)
    supplier = db.relationship('Supplier')


class PackagingMaterial(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    material_name = db.Column(db.String(100), nullable=False)
    quantity_in_stock = db.Column(db.Integer, nullable=False, default=0)
    supplier_id = db.Column(db.Integer, db.ForeignKey('supplier.id'), nullable=False)
    supplier = db.relationship('Supplier')


class FinishedProduct(db.Model):
    """
    Sellable product. quantity_available grows when a batch is finished and
    shrinks when a shipment leaves.
    """
    id = db.Column(db.Integer, primary_key=True)
    product_name = db.Column(db.String(100), nullable=False)
    sku = db.Column(db.String(50), unique=True, nullable=False, index=True)
    quantity_available = db.Column(db.Integer, nullable=False, default=0)  # Never negative
    unit_price = db.Column(db.Numeric(18, 2), nullable=False, default=0)


class ProductionBatch(db.Model):
    """
    One production run of a finished product, with its efficiency figures.
    Stages, ingredients and x-ray checks belong to the batch and are removed with it.
    """
    id = db.Column(db.Integer, primary_key=True)
    batch_number = db.Column(db.String(50), unique=True, nullable=False)
    production_date = db.Column(db.Date, nullable=False, default=date.today)
    end_date = db.Column(db.DateTime, nullable=True)  # Set when the batch is finished
    finished_product_id = db.Column(db.Integer, db.ForeignKey('finished_product.id'), nullable=False)
    supervisor_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    target_quantity = db.Column(db.Integer, nullable=False, default=0)  # Planned output
    quantity_produced = db.Column(db.Integer, nullable=False, default=0)  # Actual output
    downtime_minutes = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default='Planned')

    finished_product = db.relationship('FinishedProduct')
    supervisor = db.relationship('User')
    materials = db.relationship('ProductionMaterial', back_populates='batch', cascade='all, delete-orphan')
    stages = db.relationship('ProductionStage', back_populates='batch', cascade='all, delete-orphan',
                             order_by='ProductionStage.start_time')
    xray_checks = db.relationship('XRayCheck', back_populates='batch', cascade='all, delete-orphan',
                                  order_by='XRayCheck.check_time')


class ProductionStage(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    production_batch_id = db.Column(db.Integer, db.ForeignKey('production_batch.id'), nullable=False)
    stage_name = db.Column(db.String(20), nullable=False)  # One of STAGE_TYPES
    start_time = db.Column(db.DateTime, nullable=False, default=datetime.now)
    end_time = db.Column(db.DateTime, nullable=True)
    temperature_celsius = db.Column(db.Float, nullable=False)  # Critical for food safety
    notes = db.Column(db.String(500), nullable=True)
    batch = db.relationship('ProductionBatch', back_populates='stages')


class ProductionMaterial(db.Model):
    """Quantity of one raw material lot consumed by a batch."""
    id = db.Column(db.Integer, primary_key=True)
    production_batch_id = db.Column(db.Integer, db.ForeignKey('production_batch.id'), nullable=False)
    raw_material_id = db.Column(db.Integer, db.ForeignKey('raw_material.id'), nullable=False)
    quantity_used = db.Column(db.Numeric(18, 4), nullable=False)
    batch = db.relationship('ProductionBatch', back_populates='materials')
    raw_material = db.relationship('RawMaterial')


class XRayCheck(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    production_batch_id = db.Column(db.Integer, db.ForeignKey('production_batch.id'), nullable=False)
    check_time = db.Column(db.DateTime, nullable=False, default=datetime.now)
    result = db.Column(db.String(4), nullable=False, default='Pass')  # Pass or Fail
    comments = db.Column(db.String(500), nullable=True)
    operator_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    batch = db.relationship('ProductionBatch', back_populates='xray_checks')
    operator = db.relationship('User')


class ReceivingForm(db.Model):
    """
    Inbound inspection of a supplier delivery.
    Accepted receipts add their quantity to the raw material lot.
    """
    id = db.Column(db.Integer, primary_key=True)
    date = db.Column(db.Date, nullable=False, default=date.today)
    supplier_id = db.Column(db.Integer, db.ForeignKey('supplier.id'), nullable=False)
    raw_material_id = db.Column(db.Integer, db.ForeignKey('raw_material.id'), nullable=False)
    trailer_number = db.Column(db.String(50), nullable=False)
    is_accepted = db.Column(db.Boolean, nullable=False, default=True)
    inspection_notes = db.Column(db.String(500), nullable=True)
    total_amount = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    quantity_received = db.Column(db.Numeric(18, 4), nullable=False)
    received_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    supplier = db.relationship('Supplier')
    raw_material = db.relationship('RawMaterial')
    received_by = db.relationship('User')


class DeliveryForm(db.Model):
    """Vehicle check performed before shipments are loaded onto a trailer."""
    id = db.Column(db.Integer, primary_key=True)
    check_date = db.Column(db.Date, nullable=False, default=date.today)
    trailer_number = db.Column(db.String(50), nullable=False)
    is_temp_ok = db.Column(db.Boolean, nullable=False, default=False)
    is_clean = db.Column(db.Boolean, nullable=False, default=False)
    driver_name = db.Column(db.String(100), nullable=False)
    approved_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    approved_by = db.relationship('User')
    shipments = db.relationship('Shipment', back_populates='delivery_form')


class Shipment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    date = db.Column(db.Date, nullable=False, default=date.today)
    carrier = db.Column(db.String(50), nullable=False)
    tracking_number = db.Column(db.String(50), nullable=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customer.id'), nullable=False)
    delivery_form_id = db.Column(db.Integer, db.ForeignKey('delivery_form.id'), nullable=True)
    finished_product_id = db.Column(db.Integer, db.ForeignKey('finished_product.id'), nullable=False)
    quantity_shipped = db.Column(db.Integer, nullable=False)
    total_value = db.Column(db.Numeric(18, 2), nullable=False, default=0)  # quantity * unit price at shipping time
    status = db.Column(db.String(20), nullable=False, default='Pending')
    customer = db.relationship('Customer')
    finished_product = db.relationship('FinishedProduct')
    delivery_form = db.relationship('DeliveryForm', back_populates='shipments')


class Invoice(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(50), unique=True, nullable=False)  # INV-2026-001
    customer_id = db.Column(db.Integer, db.ForeignKey('customer.id'), nullable=False)
    date = db.Column(db.Date, nullable=False, default=date.today)
    total_amount = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    status = db.Column(db.String(10), nullable=False, default='Unpaid')
    customer = db.relationship('Customer')
    items = db.relationship('InvoiceItem', back_populates='invoice', cascade='all, delete-orphan')


class InvoiceItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey('invoice.id'), nullable=False)
    finished_product_id = db.Column(db.Integer, db.ForeignKey('finished_product.id'), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(18, 2), nullable=False)
    invoice = db.relationship('Invoice', back_populates='items')
    finished_product = db.relationship('FinishedProduct')

    @property
    def line_total(self):
        return round(self.quantity * self.unit_price, 2)


# ==================== INVENTORY HELPERS ====================

def adjust_stock(model, column_name, pk, delta):
    """
    Add ``delta`` (negative to deduct) to a stock column with one UPDATE.

    Deductions carry ``new level >= 0`` in the WHERE clause, so the row is
    only touched while it still covers the request and two requests racing
    for the last units cannot both succeed.

    Decimal columns are rounded to their scale in SQL, both when written and
    when checked, so a lot holding exactly the requested amount is never refused.

    Returns True when the row was updated, False when the stock was short
    (or the row is gone).
    """
    table = model.__table__
    column = table.c[column_name]
    new_level = column + delta
    scale = getattr(column.type, 'scale', None)
    if scale is not None:
        new_level = db.func.round(new_level, scale)
    stmt = update(table).where(table.c.id == pk).values({column_name: new_level})
    if delta < 0:
        stmt = stmt.where(new_level >= 0)
    applied = db.session.execute(stmt).rowcount == 1
    if applied:
        # Refresh the instance held by the session so later reads see the new level
        db.session.get(model, pk, populate_existing=True)
        current_app.logger.info('Stock %s#%s %s %+g', table.name, pk, column_name, delta)
    return applied


def close_batch(batch_id):
    """
    Mark a batch Completed unless it is already closed.
    The status check and the write are one statement, so a batch is only closed once.
    """
    table = ProductionBatch.__table__
    result = db.session.execute(
        update(table)
        .where(table.c.id == batch_id, table.c.status.not_in(CLOSED_BATCH_STATUSES))
        .values(status='Completed', end_date=datetime.now())
    )
    if result.rowcount != 1:
        return False
    db.session.get(ProductionBatch, batch_id, populate_existing=True)
    return True


def recalculate_invoice_total(invoice):
    """Set the invoice total to the sum of its item lines."""
    invoice.total_amount = round(sum(item.line_total for item in invoice.items), 2)


def next_invoice_number(today=None):
    """
    Generate the next sequential invoice number for the year: INV-2026-001, INV-2026-002...
    Uses the highest existing numeric suffix so numbers are not reused after deletes.
    """
    prefix = f"INV-{(today or date.today()).year}-"
    existing = [row[0] for row in db.session.query(Invoice.invoice_number)
                .filter(Invoice.invoice_number.like(prefix + '%')).all()]
    numeric_vals = [int(c[len(prefix):]) for c in existing if c[len(prefix):].isdigit()]
    next_num = (max(numeric_vals) + 1) if numeric_vals else 1
    return f"{prefix}{next_num:03d}"


# ==================== SCHEMA UPGRADE ====================

# Columns added after the first release; create_all never alters existing tables
LATE_COLUMNS = {
    'production_batch': {
        'end_date': 'DATETIME',
    },
    'shipment': {
        'delivery_form_id': 'INTEGER REFERENCES delivery_form (id)',
        'status': "VARCHAR(20) NOT NULL DEFAULT 'Pending'",
        'total_value': 'NUMERIC(18, 2) NOT NULL DEFAULT 0',
    },
}


def upgrade_schema(logger):
    """
    Add any missing LATE_COLUMNS to tables created by an earlier release.
    Returns the list of ``table.column`` names that were added.
    """
    inspector = inspect(db.engine)
    added = []
    for table, columns in LATE_COLUMNS.items():
        if not inspector.has_table(table):
            continue
        existing = {col['name'] for col in inspector.get_columns(table)}
        for name, ddl in columns.items():
            if name in existing:
                continue
            try:
                db.session.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))
                db.session.commit()
                added.append(f"{table}.{name}")
                logger.info('Added column %s.%s', table, name)
            except SQLAlchemyError as exc:
                # Keep starting up; the affected screens fail until the column is added by hand
                db.session.rollback()
                logger.warning('Could not add column %s.%s: %s', table, name, exc)
    return added


# ==================== DEMO DATA ====================

def seed_demo_data(password):
    """
    Load demo users, suppliers, raw materials and finished products.
    Does nothing and returns False when products already exist.
    """
    if FinishedProduct.query.first() is not None:
        return False

    for username, role in (('Admin', 'Admin'), ('Staff', 'Staff'), ('Manager', 'Admin'), ('Worker', 'Staff')):
        if User.query.filter_by(username=username).first() is None:
            user = User(username=username, first_name=username, last_name='Demo', role=role)
            user.set_password(password)
            db.session.add(user)

    suppliers = [
        Supplier(supplier_name='Fresh Farms Ltd', contact_person='John Smith',
                 email='orders@freshfarms.com', phone='416-555-0101'),
        Supplier(supplier_name='Organic Global Imports', contact_person='Maria Garcia',
                 email='maria@organicglobal.com', phone='416-555-0102'),
        Supplier(supplier_name='Green Packaging Solutions', contact_person='David Lee',
                 email='sales@greenpack.com', phone='416-555-0103'),
        Supplier(supplier_name='Grain Masters Inc.', contact_person='Sarah Connor',
                 email='s.connor@grainmasters.ca', phone='416-555-0104'),
        Supplier(supplier_name='Spice World', contact_person='Raj Patel',
                 email='raj@spiceworld.com', phone='416-555-0105'),
    ]
    db.session.add_all(suppliers)

    today = date.today()
    materials = [
        ('Spinach (Fresh)', 'S-2026-001', 500, 'Kg', 10, 0),
        ('Carrots (Organic)', 'C-2026-055', 1200, 'Kg', 20, 0),
        ('Kale', 'K-2026-101', 300, 'Kg', 8, 0),
        ('Quinoa (White)', 'Q-9921', 2000, 'Kg', 365, 1),
        ('Chickpeas (Dried)', 'CH-5512', 1500, 'Kg', 540, 1),
        ('Olive Oil (Extra Virgin)', 'OL-221', 500, 'Liters', 730, 1),
        ('Brown Rice', 'BR-881', 40, 'Kg', -5, 3),  # Already expired
        ('Lentils', 'LN-332', 800, 'Kg', 180, 3),
        ('Turmeric Powder', 'SP-001', 50, 'Kg', 730, 4),
        ('Black Pepper', 'SP-002', 30, 'Kg', 730, 4),
    ]
    for name, lot, qty, unit, days, supplier_idx in materials:
        db.session.add(RawMaterial(material_name=name, lot_number=lot, quantity_in_stock=qty, unit=unit,
                                   expiry_date=today + timedelta(days=days), supplier=suppliers[supplier_idx]))

    db.session.add(PackagingMaterial(material_name='Box 20x20', quantity_in_stock=1000, supplier=suppliers[2]))
    db.session.add(PackagingMaterial(material_name='Salad Bowl Lid', quantity_in_stock=5000, supplier=suppliers[2]))

    products = [
        ('Zesty Quinoa Salad', '12.50', 150), ('Green Power Bowl', '14.00', 80),
        ('Spicy Lentil Wrap', '9.50', 5), ('Mediterranean Chickpea Salad', '11.00', 200),
        ('Vegan Buddha Bowl', '15.50', 45), ('Carrot & Ginger Soup', '8.00', 300),
        ('Spinach & Kale Smoothie', '7.50', 0), ('Protein Power Box', '13.50', 120),
        ('Roasted Veggie Pasta', '12.00', 60), ('Tofu Stir Fry', '14.50', 90),
        ('Mango Tango Smoothie', '8.50', 45), ('Avocado Toast Kit', '10.00', 15),
        ('Berry Blast Bowl', '11.50', 200), ('Teriyaki Chicken (Vegan)', '13.00', 60),
        ('Cauliflower Wings', '9.00', 0), ('Falafel Hummus Box', '10.50', 120),
        ('Keto Cobb Salad', '16.00', 30), ('Sweet Potato Mash', '7.00', 500),
        ('Asian Slaw Side', '5.50', 5), ('Ginger Ale (Craft)', '3.50', 1000),
    ]
    for n, (name, price, qty) in enumerate(products, start=1):
        db.session.add(FinishedProduct(product_name=name, sku=f"GBF-{n:03d}", unit_price=Decimal(price),
                                       quantity_available=qty))

    db.session.commit()
    return True


# ==================== FORM PARSING ====================
# Each reader returns None for a value it cannot parse; validation turns that into a message.

def _text(name):
    return (request.form.get(name) or '').strip()


def _int(name, default=None):
    raw = _text(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return None


def _float(name, default=None):
    raw = _text(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return None


def _decimal(name, default=None):
    """Stock quantities and money are read as Decimal so repeated moves stay exact."""
    raw = _text(name)
    if not raw:
        return default
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def _date(name, default=None):
    raw = _text(name)
    if not raw:
        return default
    try:
        return datetime.strptime(raw, '%Y-%m-%d').date()
    except ValueError:
        return None


def _datetime(name, default=None):
    """Accepts both the HTML datetime-local format and a space separated one."""
    raw = _text(name)
    if not raw:
        return default
    for fmt in ('%Y-%m-%dT%H:%M', '%Y-%m-%dT%H:%M:%S', '%Y-%m-%d %H:%M'):
        try:
            return datetime.strptime(raw, fmt)
        except ValueError:
            continue
    return None


def _checked(name):
    return request.form.get(name) in ('on', 'true', '1', 'yes')


def _in_range(value, low, high, message):
    if value is None or not (low <= value <= high):
        return [message]
    return []


def _email_errors(email, missing_message, required=True):
    if not email:
        return [missing_message] if required else []
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return ['Invalid Email Address.']
    return []


def _phone_errors(phone):
    if phone and not PHONE_RE.match(phone):
        return ['Invalid Phone Number.']
    return []


def _exists(model, pk):
    return pk is not None and db.session.get(model, pk) is not None


def _apply(obj, values):
    for key, value in values.items():
        setattr(obj, key, value)


def _flash_errors(errors):
    for message in errors:
        flash(message)


def _parse_query_date(name):
    try:
        return datetime.strptime(request.args.get(name, ''), '%Y-%m-%d').date()
    except ValueError:
        return None


def _search_term():
    q = request.args.get('q', '').strip()
    return q, f"%{q}%"


def _blocking_references(checks):
    """Labels of the (label, query) pairs whose query still finds rows."""
    return [label for label, query in checks if query.first() is not None]


def _db_error(action):
    """Roll back after a failed write, log it and tell the user."""
    db.session.rollback()
    current_app.logger.exception('Database error while %s', action)
    flash(f"Error {action}. Please try again.")


def _commit(action):
    try:
        db.session.commit()
        return True
    except SQLAlchemyError:
        _db_error(action)
        return False


# ---------- per-entity form readers ----------

def _read_user_form(user=None):
    values = {
        'username': _text('username'),
        'email': _text('email') or None,
        'first_name': _text('first_name'),
        'last_name': _text('last_name'),
        'role': _text('role') or 'Staff',
    }
    errors = []
    if not values['username']:
        errors.append('Username is required.')
    else:
        clash = User.query.filter(User.username == values['username'])
        if user is not None:
            clash = clash.filter(User.id != user.id)
        if clash.first():
            errors.append('Username already exists.')
    if not values['first_name']:
        errors.append('First Name is required.')
    if not values['last_name']:
        errors.append('Last Name is required.')
    if values['role'] not in USER_ROLES:
        errors.append("Role must be 'Admin' or 'Staff'.")
    errors += _email_errors(values['email'], '', required=False)
    if values['email']:
        clash = User.query.filter(User.email == values['email'])
        if user is not None:
            clash = clash.filter(User.id != user.id)
        if clash.first():
            errors.append('Email is already registered.')
    return values, errors


def _read_supplier_form():
    values = {
        'supplier_name': _text('supplier_name'),
        'contact_person': _text('contact_person') or None,
        'phone': _text('phone') or None,
        'email': _text('email'),
    }
    errors = []
    if not values['supplier_name']:
        errors.append('Supplier Name is required.')
    errors += _email_errors(values['email'], 'Email is required for Purchase Orders.')
    errors += _phone_errors(values['phone'])
    return values, errors


def _read_customer_form():
    values = {
        'customer_name': _text('customer_name'),
        'contact_name': _text('contact_name') or None,
        'email': _text('email'),
        'phone': _text('phone') or None,
        'billing_address': _text('billing_address') or None,
    }
    errors = []
    if not values['customer_name']:
        errors.append('Company Name is required.')
    errors += _email_errors(values['email'], 'Email Address is required for Invoicing.')
    errors += _phone_errors(values['phone'])
    return values, errors


def _read_raw_material_form():
    values = {
        'material_name': _text('material_name'),
        'lot_number': _text('lot_number'),
        'quantity_in_stock': _decimal('quantity_in_stock', Decimal('0')),
        'unit': _text('unit') or 'Kg',
        'expiry_date': _date('expiry_date'),
        'supplier_id': _int('supplier_id'),
    }
    errors = []
    if not values['material_name']:
        errors.append('Material Name is required.')
    if not values['lot_number']:
        errors.append('Lot Number is required for Traceability.')
    errors += _in_range(values['quantity_in_stock'], 0, 100000, 'Quantity must be positive.')
    if len(values['unit']) > 20:
        errors.append('Unit is too long.')
    if values['expiry_date'] is None:
        errors.append('Expiry Date is required.')
    if not _exists(Supplier, values['supplier_id']):
        errors.append('Please select a Supplier.')
    return values, errors


def _read_packaging_material_form():
    values = {
        'material_name': _text('material_name'),
        'quantity_in_stock': _int('quantity_in_stock', 0),
        'supplier_id': _int('supplier_id'),
    }
    errors = []
    if not values['material_name']:
        errors.append('Packaging Name is required.')
    errors += _in_range(values['quantity_in_stock'], 0, 100000, 'Quantity cannot be negative.')
    if not _exists(Supplier, values['supplier_id']):
        errors.append('Select a Supplier.')
    return values, errors


def _read_finished_product_form(product=None):
    values = {
        'product_name': _text('product_name'),
        'sku': _text('sku'),
        'quantity_available': _int('quantity_available', 0),
        'unit_price': _decimal('unit_price'),
    }
    errors = []
    if not values['product_name']:
        errors.append('Product Name is required.')
    if not values['sku']:
        errors.append('SKU is required.')
    else:
        clash = FinishedProduct.query.filter(FinishedProduct.sku == values['sku'])
        if product is not None:
            clash = clash.filter(FinishedProduct.id != product.id)
        if clash.first():
            errors.append('Another product already uses that SKU.')
    errors += _in_range(values['quantity_available'], 0, 1000000, 'Stock cannot be negative.')
    errors += _in_range(values['unit_price'], Decimal('0.01'), 10000, 'Price must be greater than 0.')
    return values, errors


def _read_batch_form(batch=None):
    values = {
        'batch_number': _text('batch_number'),
        'production_date': _date('production_date', date.today()),
        'finished_product_id': _int('finished_product_id'),
        'target_quantity': _int('target_quantity', 0),
        'quantity_produced': _int('quantity_produced', 0),
        'downtime_minutes': _int('downtime_minutes', 0),
        'status': _text('status') or 'Planned',
    }
    errors = []
    if not values['batch_number']:
        errors.append('Batch Number is mandatory.')
    elif len(values['batch_number']) > 50:
        errors.append('Batch Number too long.')
    else:
        clash = ProductionBatch.query.filter(ProductionBatch.batch_number == values['batch_number'])
        if batch is not None:
            clash = clash.filter(ProductionBatch.id != batch.id)
        if clash.first():
            errors.append('Another batch already uses that Batch Number.')
    if values['production_date'] is None:
        errors.append('Production Date is not a valid date.')
    if not _exists(FinishedProduct, values['finished_product_id']):
        errors.append('Select the Product being produced.')
    errors += _in_range(values['target_quantity'], 0, 100000, 'Target Quantity must be positive.')
    errors += _in_range(values['quantity_produced'], 0, 100000, 'Quantity Produced must be positive.')
    errors += _in_range(values['downtime_minutes'], 0, 1440, 'Downtime must be between 0 and 1440 minutes.')
    if values['status'] not in BATCH_STATUSES:
        errors.append('Invalid Status.')
    return values, errors


def _read_stage_form():
    values = {
        'stage_name': _text('stage_name'),
        'start_time': _datetime('start_time', datetime.now().replace(second=0, microsecond=0)),
        'end_time': _datetime('end_time'),
        'temperature_celsius': _float('temperature_celsius'),
        'notes': _text('notes') or None,
    }
    errors = []
    if values['stage_name'] not in STAGE_TYPES:
        errors.append('Stage Name is required.')
    if values['start_time'] is None:
        errors.append('Start Time is not a valid date and time.')
    if _text('end_time') and values['end_time'] is None:
        errors.append('End Time is not a valid date and time.')
    elif values['end_time'] and values['start_time'] and values['end_time'] < values['start_time']:
        errors.append('End Time cannot be before Start Time.')
    errors += _in_range(values['temperature_celsius'], -20, 200, 'Enter a valid temperature (-20 to 200).')
    if values['notes'] and len(values['notes']) > 500:
        errors.append('Notes are too long.')
    return values, errors


def _read_production_material_form():
    values = {
        'raw_material_id': _int('raw_material_id'),
        'quantity_used': _decimal('quantity_used'),
    }
    errors = []
    if not _exists(RawMaterial, values['raw_material_id']):
        errors.append('Select an Ingredient.')
    errors += _in_range(values['quantity_used'], Decimal('0.0001'), 1000, 'Quantity must be greater than 0.')
    return values, errors


def _read_xray_form():
    values = {
        'production_batch_id': _int('production_batch_id'),
        'check_time': _datetime('check_time', datetime.now().replace(second=0, microsecond=0)),
        'result': _text('result') or 'Pass',
        'comments': _text('comments') or None,
    }
    errors = []
    if not _exists(ProductionBatch, values['production_batch_id']):
        errors.append('Batch selection is required.')
    if values['check_time'] is None:
        errors.append('Check Time is not a valid date and time.')
    if values['result'] not in XRAY_RESULTS:
        errors.append("Result must be 'Pass' or 'Fail'.")
    if values['comments'] and len(values['comments']) > 500:
        errors.append('Comment is too long.')
    return values, errors


def _read_receiving_form():
    values = {
        'date': _date('date', date.today()),
        'supplier_id': _int('supplier_id'),
        'raw_material_id': _int('raw_material_id'),
        'trailer_number': _text('trailer_number'),
        'is_accepted': _checked('is_accepted'),
        'inspection_notes': _text('inspection_notes') or None,
        'total_amount': _decimal('total_amount', Decimal('0')),
        'quantity_received': _decimal('quantity_received'),
    }
    errors = []
    if values['date'] is None:
        errors.append('Date is not a valid date.')
    if not _exists(Supplier, values['supplier_id']):
        errors.append('Select Supplier.')
    if not _exists(RawMaterial, values['raw_material_id']):
        errors.append('Select the Raw Material received.')
    if not values['trailer_number']:
        errors.append('Trailer Number is required.')
    if values['inspection_notes'] and len(values['inspection_notes']) > 500:
        errors.append('Inspection Notes are too long.')
    errors += _in_range(values['total_amount'], 0, Decimal('999999.99'), 'Total Cost must be between 0 and 999,999.99.')
    errors += _in_range(values['quantity_received'], Decimal('0.01'), 10000, 'Qty Received must be between 0.01 and 10,000.')
    return values, errors


def _read_delivery_form():
    values = {
        'check_date': _date('check_date', date.today()),
        'trailer_number': _text('trailer_number'),
        'is_temp_ok': _checked('is_temp_ok'),
        'is_clean': _checked('is_clean'),
        'driver_name': _text('driver_name'),
    }
    errors = []
    if values['check_date'] is None:
        errors.append('Check Date is not a valid date.')
    if not values['trailer_number']:
        errors.append('Trailer Number is required.')
    if not values['driver_name']:
        errors.append('Driver Name is required.')
    return values, errors


def _read_shipment_form():
    values = {
        'date': _date('date', date.today()),
        'carrier': _text('carrier'),
        'tracking_number': _text('tracking_number') or None,
        'customer_id': _int('customer_id'),
        'finished_product_id': _int('finished_product_id'),
        'quantity_shipped': _int('quantity_shipped'),
        'status': _text('status') or 'Pending',
    }
    errors = []
    if values['date'] is None:
        errors.append('Shipment Date is not a valid date.')
    if not values['carrier']:
        errors.append('Carrier name is required.')
    elif len(values['carrier']) > 50:
        errors.append('Carrier name too long.')
    if values['tracking_number'] and len(values['tracking_number']) > 50:
        errors.append('Tracking number too long.')
    if not _exists(Customer, values['customer_id']):
        errors.append('Select Customer.')
    if not _exists(FinishedProduct, values['finished_product_id']):
        errors.append('Select the product to ship.')
    errors += _in_range(values['quantity_shipped'], 1, 100000, 'Quantity must be greater than 0.')
    if values['status'] not in SHIPMENT_STATUSES:
        errors.append('Invalid Status.')
    return values, errors


def _read_invoice_form(invoice=None):
    values = {
        'invoice_number': _text('invoice_number'),
        'customer_id': _int('customer_id'),
        'date': _date('date', date.today()),
        'total_amount': _decimal('total_amount', Decimal('0')),
        'status': _text('status') or 'Unpaid',
    }
    errors = []
    if not values['invoice_number']:
        errors.append('Invoice Number is required.')
    else:
        clash = Invoice.query.filter(Invoice.invoice_number == values['invoice_number'])
        if invoice is not None:
            clash = clash.filter(Invoice.id != invoice.id)
        if clash.first():
            errors.append('Another invoice already uses that number.')
    if not _exists(Customer, values['customer_id']):
        errors.append('Customer is required.')
    if values['date'] is None:
        errors.append('Date is not a valid date.')
    errors += _in_range(values['total_amount'], 0, 1000000, 'Total cannot be negative.')
    if values['status'] not in INVOICE_STATUSES:
        errors.append('Status must be: Paid, Unpaid, or Overdue.')
    return values, errors


def _read_invoice_item_form():
    values = {
        'finished_product_id': _int('finished_product_id'),
        'quantity': _int('quantity'),
        'unit_price': _decimal('unit_price'),
    }
    errors = []
    product = db.session.get(FinishedProduct, values['finished_product_id']) \
        if values['finished_product_id'] is not None else None
    if product is None:
        errors.append('Please select a product.')
    elif not _text('unit_price'):
        # Blank price means "use the catalogue price"
        values['unit_price'] = product.unit_price
    errors += _in_range(values['quantity'], 1, 10000, 'Quantity must be at least 1.')
    if product is not None:
        errors += _in_range(values['unit_price'], Decimal('0.01'), 10000, 'Unit Price must be greater than 0.')
    return values, errors


# ==================== TEMPLATE HELPERS ====================

def format_value(value):
    """Render a column value for display in tables and detail pages."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'Yes' if value else 'No'
    if isinstance(value, datetime):
        return value.strftime('%Y-%m-%d %H:%M')
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (float, Decimal)):
        return f"{value:,.2f}"
    return str(value)


def format_quantity(value):
    """Render a stock quantity without padding or rounding: 100, 2.5, 0.005."""
    if value is None:
        return ''
    return f"{Decimal(str(value)).normalize():f}"


def resolve_path(obj, path):
    """Follow a dotted attribute path ('supplier.supplier_name'), stopping at None."""
    return reduce(lambda o, attr: getattr(o, attr, None) if o is not None else None, path.split('.'), obj)


# ==================== APPLICATION FACTORY ====================

def create_app(test_config=None):
    """
    Application factory function that creates and configures the Flask application.

    Args:
        test_config (dict, optional): Configuration overriding the defaults and
                                      the environment, used by the test suite.

    Returns:
        Flask: Configured Flask application instance ready to run.
    """
    app = Flask(__name__, template_folder='templates')

    # ==================== APPLICATION CONFIGURATION ====================
    # SQLite database in the project root unless DATABASE_URL points elsewhere
    project_root = os.path.abspath(os.path.dirname(__file__))
    db_path = os.path.join(project_root, 'traceability.db')
    app.config.from_mapping(
        SECRET_KEY=os.environ.get('FLASK_SECRET', 'dev-secret'),
        SQLALCHEMY_DATABASE_URI=os.environ.get('DATABASE_URL', f"sqlite:///{db_path}"),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        LOW_STOCK_THRESHOLD=int(os.environ.get('LOW_STOCK_THRESHOLD', '20')),
        RAW_MATERIAL_MIN_STOCK=float(os.environ.get('RAW_MATERIAL_MIN_STOCK', '50')),
        EXPIRY_WARNING_DAYS=int(os.environ.get('EXPIRY_WARNING_DAYS', '7')),
        SEED_DEMO_DATA=os.environ.get('SEED_DEMO_DATA', 'false').lower() in ('true', '1', 'yes', 'on'),
        SEED_PASSWORD=os.environ.get('SEED_PASSWORD', 'changeme'),
        LOG_LEVEL=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    )

    # Override config with test settings if provided
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config['LOG_LEVEL'])

    db.init_app(app)

    # ==================== DATABASE INITIALIZATION ====================
    with app.app_context():
        db.create_all()
        upgrade_schema(app.logger)
        if app.config['SEED_DEMO_DATA'] and seed_demo_data(app.config['SEED_PASSWORD']):
            app.logger.info('Demo data loaded')

    # ==================== AUTHENTICATION & SESSION MANAGEMENT ====================

    @app.before_request
    def load_current_user():
        """Make the signed-in user available as g.current_user."""
        user_id = session.get('user_id')
        g.current_user = db.session.get(User, user_id) if user_id is not None else None

    @app.context_processor
    def inject_globals():
        """Current user and the choice lists used by the form templates."""
        return {
            'current_user': g.get('current_user', None),
            'USER_ROLES': USER_ROLES,
            'UNITS': UNITS,
            'BATCH_STATUSES': BATCH_STATUSES,
            'STAGE_TYPES': STAGE_TYPES,
            'XRAY_RESULTS': XRAY_RESULTS,
            'SHIPMENT_STATUSES': SHIPMENT_STATUSES,
            'INVOICE_STATUSES': INVOICE_STATUSES,
        }

    app.add_template_filter(format_value, 'display')

    @app.template_filter('field')
    def field_filter(obj, path):
        value = resolve_path(obj, path)
        if path.rsplit('.', 1)[-1] in QUANTITY_FIELDS:
            return format_quantity(value)
        return format_value(value)

    app.add_template_filter(format_quantity, 'qty')

    @app.template_filter('options')
    def options_filter(rows, label_path):
        """(id, label) pairs for a select box."""
        return [(row.id, format_value(resolve_path(row, label_path))) for row in rows]

    @app.template_filter('money')
    def money_filter(value):
        return f"{value or 0:,.2f}"

    @app.errorhandler(404)
    def not_found(error):
        return render_template('404.html'), 404

    def login_required(fn):
        """
        Decorator to protect routes that require authentication.
        Redirects unauthenticated users to the login page with a flash message.
        """
        @wraps(fn)
        def wrapped(*args, **kwargs):
            if g.get('current_user') is None:
                flash('You must be logged in to access that page.')
                return redirect(url_for('login'))
            return fn(*args, **kwargs)

        return wrapped

    def get_or_404(model, pk):
        obj = db.session.get(model, pk)
        if obj is None:
            abort(404)
        return obj

    # ==================== DASHBOARD ====================

    @app.route('/')
    @login_required
    def home():
        """
        Operational dashboard: inventory value, revenue, active shipments,
        recent quality failures and stock/expiry alerts.
        """
        now = datetime.now()
        warning_date = date.today() + timedelta(days=app.config['EXPIRY_WARNING_DAYS'])
        low_stock = app.config['LOW_STOCK_THRESHOLD']

        total_value = db.session.query(
            db.func.coalesce(db.func.sum(FinishedProduct.unit_price * FinishedProduct.quantity_available), 0.0)
        ).scalar() or 0.0
        total_revenue = db.session.query(db.func.coalesce(db.func.sum(Invoice.total_amount), 0.0)).scalar() or 0.0
        active_shipments = Shipment.query.filter(Shipment.status != 'Delivered').count()
        quality_issues = XRayCheck.query.filter(
            XRayCheck.result == 'Fail', XRayCheck.check_time >= now - timedelta(hours=24)
        ).count()
        expiring_count = RawMaterial.query.filter(RawMaterial.expiry_date <= warning_date).count()

        recent_batches = ProductionBatch.query.order_by(
            ProductionBatch.production_date.desc(), ProductionBatch.id.desc()).limit(5).all()
        recent_shipments = Shipment.query.order_by(Shipment.date.desc(), Shipment.id.desc()).limit(5).all()
        low_stock_products = FinishedProduct.query.filter(
            FinishedProduct.quantity_available < low_stock
        ).order_by(FinishedProduct.quantity_available).limit(5).all()
        critical_materials = RawMaterial.query.filter(or_(
            RawMaterial.quantity_in_stock < app.config['RAW_MATERIAL_MIN_STOCK'],
            RawMaterial.expiry_date <= warning_date,
        )).order_by(RawMaterial.expiry_date).limit(5).all()

        return render_template(
            'home.html',
            total_value=total_value,
            total_revenue=total_revenue,
            active_shipments=active_shipments,
            quality_issues=quality_issues,
            expiring_count=expiring_count,
            recent_batches=recent_batches,
            recent_shipments=recent_shipments,
            low_stock_products=low_stock_products,
            critical_materials=critical_materials,
        )

    # ==================== AUTHENTICATION ROUTES ====================

    @app.route('/signup', methods=['GET', 'POST'])
    def signup():
        """
        Self-service registration of a Staff account.
        GET: Display signup form
        POST: Validate and create the user
        """
        if request.method == 'POST':
            username = _text('username')
            password = request.form.get('password', '')

            if not username or not password:
                flash('Username and password are required.')
                return redirect(url_for('signup'))

            if User.query.filter_by(username=username).first():
                flash('Username already exists.')
                return redirect(url_for('signup'))

            user = User(username=username, role='Staff',
                        first_name=_text('first_name') or None, last_name=_text('last_name') or None)
            user.set_password(password)
            db.session.add(user)
            if not _commit('creating account'):
                return redirect(url_for('signup'))

            flash('Account created successfully. Please log in.')
            return redirect(url_for('login'))

        return render_template('signup.html')

    @app.route('/login', methods=['GET', 'POST'])
    def login():
        """
        GET: Display login form
        POST: Authenticate by username or email and start a session
        """
        if request.method == 'POST':
            identifier = _text('username')
            password = request.form.get('password', '')

            user = User.query.filter(or_(User.username == identifier, User.email == identifier)).first() \
                if identifier else None
            if user and user.check_password(password):
                session.clear()
                session['user_id'] = user.id
                return redirect(url_for('home'))

            flash('Invalid username or password.')
            return redirect(url_for('login'))

        return render_template('login.html')

    @app.route('/logout')
    def logout():
        session.clear()
        flash('You have been logged out.')
        return redirect(url_for('login'))

    # ==================== USER MANAGEMENT ROUTES ====================

    @app.route('/users')
    @login_required
    def users():
        items = User.query.order_by(User.username).all()
        return render_template('users.html', users=items)

    @app.route('/users/<int:user_id>')
    @login_required
    def user_detail(user_id):
        return render_template('user_detail.html', user=get_or_404(User, user_id))

    @app.route('/users/add', methods=['GET', 'POST'])
    @login_required
    def add_user():
        """Register a user on behalf of someone else; a password is mandatory."""
        if request.method == 'POST':
            values, errors = _read_user_form()
            password = request.form.get('password', '')
            if not password:
                errors.append('Password is required.')
            if errors:
                _flash_errors(errors)
                return redirect(url_for('add_user'))

            user = User(**values)
            user.set_password(password)
            db.session.add(user)
            if not _commit('registering user'):
                return redirect(url_for('add_user'))
            flash('New user registered successfully!')
            return redirect(url_for('users'))

        return render_template('user_form.html', user=None)

    @app.route('/users/<int:user_id>/edit', methods=['GET', 'POST'])
    @login_required
    def edit_user(user_id):
        """Update profile and role; the password only changes when a new one is given."""
        user = get_or_404(User, user_id)

        if request.method == 'POST':
            values, errors = _read_user_form(user)
            if errors:
                _flash_errors(errors)
                return redirect(url_for('edit_user', user_id=user_id))

            _apply(user, values)
            password = request.form.get('password', '')
            if password:
                user.set_password(password)
            if not _commit('updating user'):
                return redirect(url_for('edit_user', user_id=user_id))
            flash('User details updated successfully!')
            return redirect(url_for('users'))

        return render_template('user_form.html', user=user)

    @app.route('/users/<int:user_id>/delete', methods=['POST'])
    @login_required
    def delete_user(user_id):
        user = get_or_404(User, user_id)

        if user.id == g.current_user.id:
            flash('You cannot delete your own account.')
            return redirect(url_for('users'))

        in_use = _blocking_references([
            ('production batches', ProductionBatch.query.filter_by(supervisor_id=user.id)),
            ('x-ray checks', XRayCheck.query.filter_by(operator_id=user.id)),
            ('receiving forms', ReceivingForm.query.filter_by(received_by_id=user.id)),
            ('delivery forms', DeliveryForm.query.filter_by(approved_by_id=user.id)),
        ])
        if in_use:
            flash(f"Cannot delete user. It has related records: {', '.join(in_use)}.")
            return redirect(url_for('users'))

        db.session.delete(user)
        if _commit('deleting user'):
            flash('User removed from the system.')
        return redirect(url_for('users'))

    # ==================== SUPPLIER ROUTES ====================

    @app.route('/suppliers')
    @login_required
    def suppliers():
        q, like = _search_term()
        query = Supplier.query
        if q:
            query = query.filter(or_(Supplier.supplier_name.ilike(like),
                                     Supplier.contact_person.ilike(like),
                                     Supplier.email.ilike(like)))
        return render_template('suppliers.html', suppliers=query.order_by(Supplier.supplier_name).all(), q=q)

    @app.route('/suppliers/<int:supplier_id>')
    @login_required
    def supplier_detail(supplier_id):
        supplier = get_or_404(Supplier, supplier_id)
        materials = RawMaterial.query.filter_by(supplier_id=supplier.id).order_by(RawMaterial.material_name).all()
        return render_template('supplier_detail.html', supplier=supplier, materials=materials)

    @app.route('/suppliers/add', methods=['GET', 'POST'])
    @login_required
    def add_supplier():
        if request.method == 'POST':
            values, errors = _read_supplier_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('add_supplier'))

            db.session.add(Supplier(**values))
            if not _commit('creating supplier'):
                return redirect(url_for('add_supplier'))
            flash('Supplier created successfully!')
            return redirect(url_for('suppliers'))

        return render_template('supplier_form.html', supplier=None)

    @app.route('/suppliers/<int:supplier_id>/edit', methods=['GET', 'POST'])
    @login_required
    def edit_supplier(supplier_id):
        supplier = get_or_404(Supplier, supplier_id)

        if request.method == 'POST':
            values, errors = _read_supplier_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('edit_supplier', supplier_id=supplier_id))

            _apply(supplier, values)
            if not _commit('updating supplier'):
                return redirect(url_for('edit_supplier', supplier_id=supplier_id))
            flash('Supplier updated successfully!')
            return redirect(url_for('suppliers'))

        return render_template('supplier_form.html', supplier=supplier)

    @app.route('/suppliers/<int:supplier_id>/delete', methods=['POST'])
    @login_required
    def delete_supplier(supplier_id):
        """Delete a supplier unless materials or receipts still point at it."""
        supplier = get_or_404(Supplier, supplier_id)

        in_use = _blocking_references([
            ('raw materials', RawMaterial.query.filter_by(supplier_id=supplier.id)),
            ('packaging materials', PackagingMaterial.query.filter_by(supplier_id=supplier.id)),
            ('receiving forms', ReceivingForm.query.filter_by(supplier_id=supplier.id)),
        ])
        if in_use:
            flash(f"Cannot delete supplier: it is referenced by {', '.join(in_use)}.")
            return redirect(url_for('suppliers'))

        db.session.delete(supplier)
        if _commit('deleting supplier'):
            flash('Supplier deleted.')
        return redirect(url_for('suppliers'))

    # ==================== CUSTOMER ROUTES ====================

    @app.route('/customers')
    @login_required
    def customers():
        q, like = _search_term()
        query = Customer.query
        if q:
            query = query.filter(or_(Customer.customer_name.ilike(like),
                                     Customer.contact_name.ilike(like),
                                     Customer.email.ilike(like)))
        return render_template('customers.html', customers=query.order_by(Customer.customer_name).all(), q=q)

    @app.route('/customers/<int:customer_id>')
    @login_required
    def customer_detail(customer_id):
        customer = get_or_404(Customer, customer_id)
        shipments = Shipment.query.filter_by(customer_id=customer.id).order_by(Shipment.date.desc()).all()
        invoices = Invoice.query.filter_by(customer_id=customer.id).order_by(Invoice.date.desc()).all()
        return render_template('customer_detail.html', customer=customer, shipments=shipments, invoices=invoices)

    @app.route('/customers/add', methods=['GET', 'POST'])
    @login_required
    def add_customer():
        if request.method == 'POST':
            values, errors = _read_customer_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('add_customer'))

            db.session.add(Customer(**values))
            if not _commit('creating customer'):
                return redirect(url_for('add_customer'))
            flash('Customer created successfully!')
            return redirect(url_for('customers'))

        return render_template('customer_form.html', customer=None)

    @app.route('/customers/<int:customer_id>/edit', methods=['GET', 'POST'])
    @login_required
    def edit_customer(customer_id):
        customer = get_or_404(Customer, customer_id)

        if request.method == 'POST':
            values, errors = _read_customer_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('edit_customer', customer_id=customer_id))

            _apply(customer, values)
            if not _commit('updating customer'):
                return redirect(url_for('edit_customer', customer_id=customer_id))
            flash('Customer updated successfully!')
            return redirect(url_for('customers'))

        return render_template('customer_form.html', customer=customer)

    @app.route('/customers/<int:customer_id>/delete', methods=['POST'])
    @login_required
    def delete_customer(customer_id):
        customer = get_or_404(Customer, customer_id)

        in_use = _blocking_references([
            ('shipments', Shipment.query.filter_by(customer_id=customer.id)),
            ('invoices', Invoice.query.filter_by(customer_id=customer.id)),
        ])
        if in_use:
            flash(f"Cannot delete customer: it is referenced by {', '.join(in_use)}.")
            return redirect(url_for('customers'))

        db.session.delete(customer)
        if _commit('deleting customer'):
            flash('Customer deleted.')
        return redirect(url_for('customers'))

    # ==================== RAW MATERIAL ROUTES ====================

    @app.route('/raw-materials')
    @login_required
    def raw_materials():
        """Ingredient lots, soonest expiry first so FIFO picking is obvious."""
        q, like = _search_term()
        query = RawMaterial.query.join(RawMaterial.supplier)
        if q:
            query = query.filter(or_(RawMaterial.material_name.ilike(like),
                                     RawMaterial.lot_number.ilike(like),
                                     Supplier.supplier_name.ilike(like)))
        items = query.order_by(RawMaterial.expiry_date, RawMaterial.material_name).all()
        return render_template('raw_materials.html', materials=items, q=q)

    @app.route('/raw-materials/<int:material_id>')
    @login_required
    def raw_material_detail(material_id):
        material = get_or_404(RawMaterial, material_id)
        usages = ProductionMaterial.query.filter_by(raw_material_id=material.id).all()
        receipts = ReceivingForm.query.filter_by(raw_material_id=material.id).order_by(ReceivingForm.date.desc()).all()
        return render_template('raw_material_detail.html', material=material, usages=usages, receipts=receipts)

    @app.route('/raw-materials/add', methods=['GET', 'POST'])
    @login_required
    def add_raw_material():
        if request.method == 'POST':
            values, errors = _read_raw_material_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('add_raw_material'))

            db.session.add(RawMaterial(**values))
            if not _commit('adding material'):
                return redirect(url_for('add_raw_material'))
            flash('Material added to inventory!')
            return redirect(url_for('raw_materials'))

        suppliers_list = Supplier.query.order_by(Supplier.supplier_name).all()
        return render_template('raw_material_form.html', material=None, suppliers=suppliers_list)

    @app.route('/raw-materials/<int:material_id>/edit', methods=['GET', 'POST'])
    @login_required
    def edit_raw_material(material_id):
        material = get_or_404(RawMaterial, material_id)

        if request.method == 'POST':
            values, errors = _read_raw_material_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('edit_raw_material', material_id=material_id))

            _apply(material, values)
            if not _commit('updating material'):
                return redirect(url_for('edit_raw_material', material_id=material_id))
            flash('Material details updated successfully!')
            return redirect(url_for('raw_materials'))

        suppliers_list = Supplier.query.order_by(Supplier.supplier_name).all()
        return render_template('raw_material_form.html', material=material, suppliers=suppliers_list)

    @app.route('/raw-materials/<int:material_id>/delete', methods=['POST'])
    @login_required
    def delete_raw_material(material_id):
        material = get_or_404(RawMaterial, material_id)

        in_use = _blocking_references([
            ('production batches', ProductionMaterial.query.filter_by(raw_material_id=material.id)),
            ('receiving forms', ReceivingForm.query.filter_by(raw_material_id=material.id)),
        ])
        if in_use:
            flash(f"Cannot delete material: it is referenced by {', '.join(in_use)}.")
            return redirect(url_for('raw_materials'))

        db.session.delete(material)
        if _commit('deleting material'):
            flash('Material deleted from inventory!')
        return redirect(url_for('raw_materials'))

    # ==================== PACKAGING MATERIAL ROUTES ====================

    @app.route('/packaging-materials')
    @login_required
    def packaging_materials():
        q, like = _search_term()
        query = PackagingMaterial.query.join(PackagingMaterial.supplier)
        if q:
            query = query.filter(or_(PackagingMaterial.material_name.ilike(like),
                                     Supplier.supplier_name.ilike(like)))
        items = query.order_by(PackagingMaterial.material_name).all()
        return render_template('packaging_materials.html', materials=items, q=q)

    @app.route('/packaging-materials/<int:material_id>')
    @login_required
    def packaging_material_detail(material_id):
        return render_template('packaging_material_detail.html',
                               material=get_or_404(PackagingMaterial, material_id))

    @app.route('/packaging-materials/add', methods=['GET', 'POST'])
    @login_required
    def add_packaging_material():
        if request.method == 'POST':
            values, errors = _read_packaging_material_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('add_packaging_material'))

            db.session.add(PackagingMaterial(**values))
            if not _commit('adding packaging material'):
                return redirect(url_for('add_packaging_material'))
            flash('Packaging material added!')
            return redirect(url_for('packaging_materials'))

        suppliers_list = Supplier.query.order_by(Supplier.supplier_name).all()
        return render_template('packaging_material_form.html', material=None, suppliers=suppliers_list)

    @app.route('/packaging-materials/<int:material_id>/edit', methods=['GET', 'POST'])
    @login_required
    def edit_packaging_material(material_id):
        material = get_or_404(PackagingMaterial, material_id)

        if request.method == 'POST':
            values, errors = _read_packaging_material_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('edit_packaging_material', material_id=material_id))

            _apply(material, values)
            if not _commit('updating packaging material'):
                return redirect(url_for('edit_packaging_material', material_id=material_id))
            flash('Packaging material updated!')
            return redirect(url_for('packaging_materials'))

        suppliers_list = Supplier.query.order_by(Supplier.supplier_name).all()
        return render_template('packaging_material_form.html', material=material, suppliers=suppliers_list)

    @app.route('/packaging-materials/<int:material_id>/delete', methods=['POST'])
    @login_required
    def delete_packaging_material(material_id):
        material = get_or_404(PackagingMaterial, material_id)
        db.session.delete(material)
        if _commit('deleting packaging material'):
            flash('Packaging material deleted!')
        return redirect(url_for('packaging_materials'))

    # ==================== FINISHED PRODUCT ROUTES ====================

    @app.route('/products')
    @login_required
    def products():
        q, like = _search_term()
        query = FinishedProduct.query
        if q:
            query = query.filter(or_(FinishedProduct.product_name.ilike(like), FinishedProduct.sku.ilike(like)))
        items = query.order_by(FinishedProduct.product_name).all()
        return render_template('products.html', products=items, q=q)

    @app.route('/products/<int:product_id>')
    @login_required
    def product_detail(product_id):
        product = get_or_404(FinishedProduct, product_id)
        batches = ProductionBatch.query.filter_by(finished_product_id=product.id) \
            .order_by(ProductionBatch.production_date.desc()).all()
        return render_template('product_detail.html', product=product, batches=batches)

    @app.route('/products/add', methods=['GET', 'POST'])
    @login_required
    def add_product():
        if request.method == 'POST':
            values, errors = _read_finished_product_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('add_product'))

            db.session.add(FinishedProduct(**values))
            if not _commit('creating finished product'):
                return redirect(url_for('add_product'))
            flash('Product created successfully!')
            return redirect(url_for('products'))

        return render_template('product_form.html', product=None)

    @app.route('/products/<int:product_id>/edit', methods=['GET', 'POST'])
    @login_required
    def edit_product(product_id):
        product = get_or_404(FinishedProduct, product_id)

        if request.method == 'POST':
            values, errors = _read_finished_product_form(product)
            if errors:
                _flash_errors(errors)
                return redirect(url_for('edit_product', product_id=product_id))

            _apply(product, values)
            if not _commit('updating finished product'):
                return redirect(url_for('edit_product', product_id=product_id))
            flash('Product updated successfully!')
            return redirect(url_for('products'))

        return render_template('product_form.html', product=product)

    @app.route('/products/<int:product_id>/delete', methods=['POST'])
    @login_required
    def delete_product(product_id):
        product = get_or_404(FinishedProduct, product_id)

        in_use = _blocking_references([
            ('production batches', ProductionBatch.query.filter_by(finished_product_id=product.id)),
            ('shipments', Shipment.query.filter_by(finished_product_id=product.id)),
            ('invoice items', InvoiceItem.query.filter_by(finished_product_id=product.id)),
        ])
        if in_use:
            flash(f"Cannot delete product: it is referenced by {', '.join(in_use)}.")
            return redirect(url_for('products'))

        db.session.delete(product)
        if _commit('deleting finished product'):
            flash('Product deleted from catalog!')
        return redirect(url_for('products'))

    # ==================== PRODUCTION BATCH ROUTES ====================

    @app.route('/batches')
    @login_required
    def batches():
        q, like = _search_term()
        query = ProductionBatch.query.join(ProductionBatch.finished_product)
        if q:
            query = query.filter(or_(ProductionBatch.batch_number.ilike(like),
                                     ProductionBatch.status.ilike(like),
                                     FinishedProduct.product_name.ilike(like)))
        items = query.order_by(ProductionBatch.production_date.desc(), ProductionBatch.id.desc()).all()
        return render_template('batches.html', batches=items, q=q)

    @app.route('/batches/<int:batch_id>')
    @login_required
    def batch_detail(batch_id):
        """Batch with the ingredients it consumed, its stages and its x-ray checks."""
        return render_template('batch_detail.html', batch=get_or_404(ProductionBatch, batch_id))

    @app.route('/batches/add', methods=['GET', 'POST'])
    @login_required
    def add_batch():
        """Schedule a batch; the signed-in user becomes its supervisor."""
        if request.method == 'POST':
            values, errors = _read_batch_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('add_batch'))

            db.session.add(ProductionBatch(**values, supervisor_id=g.current_user.id))
            if not _commit('scheduling batch'):
                return redirect(url_for('add_batch'))
            flash('Production batch scheduled successfully!')
            return redirect(url_for('batches'))

        products_list = FinishedProduct.query.order_by(FinishedProduct.product_name).all()
        return render_template('batch_form.html', batch=None, products=products_list)

    @app.route('/batches/<int:batch_id>/edit', methods=['GET', 'POST'])
    @login_required
    def edit_batch(batch_id):
        batch = get_or_404(ProductionBatch, batch_id)

        if request.method == 'POST':
            values, errors = _read_batch_form(batch)
            if errors:
                _flash_errors(errors)
                return redirect(url_for('edit_batch', batch_id=batch_id))

            _apply(batch, values)
            batch.supervisor_id = g.current_user.id
            if not _commit('updating batch'):
                return redirect(url_for('edit_batch', batch_id=batch_id))
            flash('Production status updated!')
            return redirect(url_for('batches'))

        products_list = FinishedProduct.query.order_by(FinishedProduct.product_name).all()
        return render_template('batch_form.html', batch=batch, products=products_list)

    @app.route('/batches/<int:batch_id>/delete', methods=['POST'])
    @login_required
    def delete_batch(batch_id):
        """Delete a batch together with its stages, ingredient lines and x-ray checks."""
        batch = get_or_404(ProductionBatch, batch_id)
        db.session.delete(batch)
        if _commit('deleting batch'):
            flash('Batch record deleted.')
        return redirect(url_for('batches'))

    @app.route('/batches/<int:batch_id>/finish', methods=['POST'])
    @login_required
    def finish_batch(batch_id):
        """
        Close a batch and move its output into finished goods stock.
        Completed or cancelled batches are refused so output is never counted twice.
        """
        batch = get_or_404(ProductionBatch, batch_id)
        produced = batch.quantity_produced

        try:
            if not close_batch(batch.id):
                db.session.rollback()
                flash('This batch is already closed.')
                return redirect(url_for('batch_detail', batch_id=batch_id))
            adjust_stock(FinishedProduct, 'quantity_available', batch.finished_product_id, produced)
            db.session.commit()
        except SQLAlchemyError:
            _db_error('finishing batch')
            return redirect(url_for('batch_detail', batch_id=batch_id))

        app.logger.info('Batch %s completed, %s units added to stock', batch.batch_number, produced)
        flash(f'Batch Completed! Added {produced} units to Inventory.')
        return redirect(url_for('batch_detail', batch_id=batch_id))

    # ==================== PRODUCTION MATERIAL ROUTES ====================

    @app.route('/batches/<int:batch_id>/materials/add', methods=['GET', 'POST'])
    @login_required
    def add_production_material(batch_id):
        """
        Record an ingredient used by a batch and deduct it from the raw material lot.
        The deduction is refused when the lot does not hold enough stock.
        """
        batch = get_or_404(ProductionBatch, batch_id)

        if request.method == 'POST':
            values, errors = _read_production_material_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('add_production_material', batch_id=batch_id))

            material = db.session.get(RawMaterial, values['raw_material_id'])
            try:
                if not adjust_stock(RawMaterial, 'quantity_in_stock', material.id, -values['quantity_used']):
                    db.session.rollback()
                    flash(f'Not enough stock! We only have '
                          f'{format_quantity(material.quantity_in_stock)} {material.unit}')
                    return redirect(url_for('add_production_material', batch_id=batch_id))
                db.session.add(ProductionMaterial(production_batch_id=batch.id, **values))
                db.session.commit()
            except SQLAlchemyError:
                _db_error('creating production material')
                return redirect(url_for('add_production_material', batch_id=batch_id))

            flash('Ingredient added and Inventory updated!')
            return redirect(url_for('batch_detail', batch_id=batch_id))

        materials = RawMaterial.query.filter(RawMaterial.quantity_in_stock > 0) \
            .order_by(RawMaterial.expiry_date, RawMaterial.material_name).all()
        return render_template('production_material_form.html', batch=batch, materials=materials)

    # ==================== PRODUCTION STAGE ROUTES ====================

    @app.route('/batches/<int:batch_id>/stages/add', methods=['GET', 'POST'])
    @login_required
    def add_stage(batch_id):
        batch = get_or_404(ProductionBatch, batch_id)

        if request.method == 'POST':
            values, errors = _read_stage_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('add_stage', batch_id=batch_id))

            db.session.add(ProductionStage(production_batch_id=batch.id, **values))
            if not _commit('creating production stage'):
                return redirect(url_for('add_stage', batch_id=batch_id))
            flash('Production stage created successfully.')
            return redirect(url_for('batch_detail', batch_id=batch_id))

        return render_template('stage_form.html', batch=batch, stage=None)

    @app.route('/stages/<int:stage_id>/edit', methods=['GET', 'POST'])
    @login_required
    def edit_stage(stage_id):
        stage = get_or_404(ProductionStage, stage_id)

        if request.method == 'POST':
            values, errors = _read_stage_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('edit_stage', stage_id=stage_id))

            _apply(stage, values)
            if not _commit('updating production stage'):
                return redirect(url_for('edit_stage', stage_id=stage_id))
            flash('Production stage updated successfully.')
            return redirect(url_for('batch_detail', batch_id=stage.production_batch_id))

        return render_template('stage_form.html', batch=stage.batch, stage=stage)

    # ==================== X-RAY CHECK ROUTES ====================

    @app.route('/xray-checks')
    @login_required
    def xray_checks():
        items = XRayCheck.query.order_by(XRayCheck.check_time.desc()).all()
        return render_template('xray_checks.html', checks=items)

    @app.route('/xray-checks/<int:check_id>')
    @login_required
    def xray_check_detail(check_id):
        return render_template('xray_check_detail.html', check=get_or_404(XRayCheck, check_id))

    @app.route('/xray-checks/add', methods=['GET', 'POST'])
    @login_required
    def add_xray_check():
        """Record an inspection; the signed-in user is the operator."""
        if request.method == 'POST':
            values, errors = _read_xray_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('add_xray_check'))

            db.session.add(XRayCheck(**values, operator_id=g.current_user.id))
            if not _commit('creating X-Ray Inspection'):
                return redirect(url_for('add_xray_check'))
            if values['result'] == 'Fail':
                app.logger.warning('X-ray check failed for batch #%s', values['production_batch_id'])
            flash('The X-Ray Inspection was created successfully!')
            return redirect(url_for('xray_checks'))

        batches_list = ProductionBatch.query.order_by(ProductionBatch.batch_number).all()
        selected = request.args.get('batch_id', type=int)
        return render_template('xray_check_form.html', check=None, batches=batches_list, selected=selected)

    @app.route('/xray-checks/<int:check_id>/edit', methods=['GET', 'POST'])
    @login_required
    def edit_xray_check(check_id):
        check = get_or_404(XRayCheck, check_id)

        if request.method == 'POST':
            values, errors = _read_xray_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('edit_xray_check', check_id=check_id))

            _apply(check, values)
            check.operator_id = g.current_user.id
            if not _commit('editing X-Ray Inspection'):
                return redirect(url_for('edit_xray_check', check_id=check_id))
            flash('The X-Ray Inspection was edited successfully!')
            return redirect(url_for('xray_checks'))

        batches_list = ProductionBatch.query.order_by(ProductionBatch.batch_number).all()
        return render_template('xray_check_form.html', check=check, batches=batches_list,
                               selected=check.production_batch_id)

    @app.route('/xray-checks/<int:check_id>/delete', methods=['POST'])
    @login_required
    def delete_xray_check(check_id):
        check = get_or_404(XRayCheck, check_id)
        db.session.delete(check)
        if _commit('deleting X-Ray Inspection'):
            flash('X-Ray Inspection deleted.')
        return redirect(url_for('xray_checks'))

    # ==================== RECEIVING FORM ROUTES ====================

    @app.route('/receiving')
    @login_required
    def receiving_forms():
        q, like = _search_term()
        query = ReceivingForm.query.join(ReceivingForm.raw_material).join(ReceivingForm.supplier)
        if q:
            query = query.filter(or_(RawMaterial.material_name.ilike(like),
                                     Supplier.supplier_name.ilike(like),
                                     ReceivingForm.trailer_number.ilike(like)))
        items = query.order_by(ReceivingForm.date.desc(), ReceivingForm.id.desc()).all()
        return render_template('receiving_forms.html', forms=items, q=q)

    @app.route('/receiving/<int:form_id>')
    @login_required
    def receiving_form_detail(form_id):
        return render_template('receiving_form_detail.html', form=get_or_404(ReceivingForm, form_id))

    @app.route('/receiving/add', methods=['GET', 'POST'])
    @login_required
    def add_receiving_form():
        """
        Log an inbound delivery. Accepted receipts increase the raw material
        stock; rejected ones are kept for the record without touching stock.
        """
        if request.method == 'POST':
            values, errors = _read_receiving_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('add_receiving_form'))

            material = db.session.get(RawMaterial, values['raw_material_id'])
            try:
                if values['is_accepted'] and not adjust_stock(RawMaterial, 'quantity_in_stock', material.id,
                                                              values['quantity_received']):
                    db.session.rollback()
                    flash('Raw material no longer exists. Receipt was not saved.')
                    return redirect(url_for('add_receiving_form'))
                db.session.add(ReceivingForm(**values, received_by_id=g.current_user.id))
                db.session.commit()
            except SQLAlchemyError:
                _db_error('creating receipt')
                return redirect(url_for('add_receiving_form'))

            if values['is_accepted']:
                flash(f"Success! Added {format_quantity(values['quantity_received'])} {material.unit} of "
                      f"{material.material_name}. Cost: {values['total_amount']:.2f}")
            else:
                flash('Receipt saved as REJECTED. Inventory was NOT updated.')
            return redirect(url_for('receiving_forms'))

        suppliers_list = Supplier.query.order_by(Supplier.supplier_name).all()
        materials = RawMaterial.query.order_by(RawMaterial.material_name).all()
        return render_template('receiving_form_form.html', suppliers=suppliers_list, materials=materials)

    # ==================== DELIVERY FORM ROUTES ====================

    @app.route('/deliveries')
    @login_required
    def delivery_forms():
        q, like = _search_term()
        query = DeliveryForm.query.join(DeliveryForm.approved_by)
        if q:
            query = query.filter(or_(DeliveryForm.trailer_number.ilike(like),
                                     DeliveryForm.driver_name.ilike(like),
                                     User.username.ilike(like)))
        items = query.order_by(DeliveryForm.check_date.desc(), DeliveryForm.id.desc()).all()
        return render_template('delivery_forms.html', forms=items, q=q)

    @app.route('/deliveries/<int:form_id>')
    @login_required
    def delivery_form_detail(form_id):
        return render_template('delivery_form_detail.html', form=get_or_404(DeliveryForm, form_id))

    @app.route('/deliveries/add', methods=['GET', 'POST'])
    @login_required
    def add_delivery_form():
        """
        Record a vehicle check and load the selected shipments onto it.
        Only unassigned, non-cancelled shipments can be loaded; they move to Shipped.
        """
        if request.method == 'POST':
            values, errors = _read_delivery_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('add_delivery_form'))

            form = DeliveryForm(**values, approved_by_id=g.current_user.id)
            db.session.add(form)
            selected_ids = [int(v) for v in request.form.getlist('shipment_ids') if v.isdigit()]
            if selected_ids:
                loadable = Shipment.query.filter(Shipment.id.in_(selected_ids),
                                                 Shipment.delivery_form_id.is_(None),
                                                 Shipment.status != 'Cancelled').all()
                for shipment in loadable:
                    shipment.delivery_form = form
                    shipment.status = 'Shipped'
            if not _commit('creating delivery'):
                return redirect(url_for('add_delivery_form'))
            flash('Delivery form created successfully.')
            return redirect(url_for('delivery_forms'))

        pending = Shipment.query.filter(Shipment.delivery_form_id.is_(None), Shipment.status != 'Cancelled') \
            .order_by(Shipment.date).all()
        return render_template('delivery_form_form.html', form=None, shipments=pending)

    @app.route('/deliveries/<int:form_id>/edit', methods=['GET', 'POST'])
    @login_required
    def edit_delivery_form(form_id):
        form = get_or_404(DeliveryForm, form_id)

        if request.method == 'POST':
            values, errors = _read_delivery_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('edit_delivery_form', form_id=form_id))

            _apply(form, values)
            if not _commit('updating delivery'):
                return redirect(url_for('edit_delivery_form', form_id=form_id))
            flash('Delivery form updated successfully.')
            return redirect(url_for('delivery_forms'))

        return render_template('delivery_form_form.html', form=form, shipments=[])

    @app.route('/deliveries/<int:form_id>/delete', methods=['POST'])
    @login_required
    def delete_delivery_form(form_id):
        """Delete a vehicle check; its shipments go back to Pending for another truck."""
        form = get_or_404(DeliveryForm, form_id)
        for shipment in list(form.shipments):
            shipment.delivery_form = None
            shipment.status = 'Pending'
        db.session.delete(form)
        if _commit('deleting delivery'):
            flash('Delivery form deleted successfully.')
        return redirect(url_for('delivery_forms'))

    # ==================== SHIPMENT ROUTES ====================

    @app.route('/shipments')
    @login_required
    def shipments():
        q, like = _search_term()
        query = Shipment.query.join(Shipment.customer).join(Shipment.finished_product)
        if q:
            query = query.filter(or_(Customer.customer_name.ilike(like),
                                     Shipment.tracking_number.ilike(like),
                                     FinishedProduct.product_name.ilike(like)))
        items = query.order_by(Shipment.date.desc(), Shipment.id.desc()).all()
        return render_template('shipments.html', shipments=items, q=q)

    @app.route('/shipments/<int:shipment_id>')
    @login_required
    def shipment_detail(shipment_id):
        return render_template('shipment_detail.html', shipment=get_or_404(Shipment, shipment_id))

    def _shipment_form(shipment):
        customers_list = Customer.query.order_by(Customer.customer_name).all()
        products_list = FinishedProduct.query.order_by(FinishedProduct.product_name).all()
        return render_template('shipment_form.html', shipment=shipment,
                               customers=customers_list, products=products_list)

    @app.route('/shipments/add', methods=['GET', 'POST'])
    @login_required
    def add_shipment():
        """
        Ship finished goods to a customer.
        Stock is deducted and the shipment valued at the product's current unit price.
        """
        if request.method == 'POST':
            values, errors = _read_shipment_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('add_shipment'))

            product = db.session.get(FinishedProduct, values['finished_product_id'])
            quantity = values['quantity_shipped']
            try:
                if not adjust_stock(FinishedProduct, 'quantity_available', product.id, -quantity):
                    db.session.rollback()
                    flash(f'Not enough stock! Only {product.quantity_available} units available.')
                    return redirect(url_for('add_shipment'))
                db.session.add(Shipment(**values, total_value=round(quantity * product.unit_price, 2)))
                db.session.commit()
            except SQLAlchemyError:
                _db_error('processing shipment')
                return redirect(url_for('add_shipment'))

            flash('Shipment created successfully! Inventory updated.')
            return redirect(url_for('shipments'))

        return _shipment_form(None)

    @app.route('/shipments/<int:shipment_id>/edit', methods=['GET', 'POST'])
    @login_required
    def edit_shipment(shipment_id):
        """
        Update a shipment and move only the stock difference.
        Switching product returns the old quantity to the old product and
        deducts the new quantity from the new one.
        """
        shipment = get_or_404(Shipment, shipment_id)

        if request.method == 'POST':
            values, errors = _read_shipment_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('edit_shipment', shipment_id=shipment_id))

            old_product_id, old_quantity = shipment.finished_product_id, shipment.quantity_shipped
            product = db.session.get(FinishedProduct, values['finished_product_id'])
            quantity = values['quantity_shipped']
            try:
                if product.id == old_product_id:
                    ok = adjust_stock(FinishedProduct, 'quantity_available', product.id, old_quantity - quantity)
                else:
                    adjust_stock(FinishedProduct, 'quantity_available', old_product_id, old_quantity)
                    ok = adjust_stock(FinishedProduct, 'quantity_available', product.id, -quantity)
                if not ok:
                    db.session.rollback()
                    flash(f'Not enough stock for this increase. Only {product.quantity_available} available.')
                    return redirect(url_for('edit_shipment', shipment_id=shipment_id))
                _apply(shipment, values)
                shipment.total_value = round(quantity * product.unit_price, 2)
                db.session.commit()
            except SQLAlchemyError:
                _db_error('editing shipment')
                return redirect(url_for('edit_shipment', shipment_id=shipment_id))

            flash('Shipment updated and inventory adjusted!')
            return redirect(url_for('shipments'))

        return _shipment_form(shipment)

    @app.route('/shipments/<int:shipment_id>/delete', methods=['POST'])
    @login_required
    def delete_shipment(shipment_id):
        """Delete a shipment and put its quantity back on the shelf."""
        shipment = get_or_404(Shipment, shipment_id)
        try:
            adjust_stock(FinishedProduct, 'quantity_available', shipment.finished_product_id, shipment.quantity_shipped)
            db.session.delete(shipment)
            db.session.commit()
        except SQLAlchemyError:
            _db_error('deleting shipment')
            return redirect(url_for('shipments'))

        flash('Shipment deleted and stock restored.')
        return redirect(url_for('shipments'))

    # ==================== INVOICE ROUTES ====================

    @app.route('/invoices')
    @login_required
    def invoices():
        items = Invoice.query.order_by(Invoice.date.desc(), Invoice.id.desc()).all()
        return render_template('invoices.html', invoices=items)

    @app.route('/invoices/<int:invoice_id>')
    @login_required
    def invoice_detail(invoice_id):
        invoice = get_or_404(Invoice, invoice_id)
        products_list = FinishedProduct.query.order_by(FinishedProduct.product_name).all()
        return render_template('invoice_detail.html', invoice=invoice, products=products_list)

    @app.route('/invoices/add', methods=['GET', 'POST'])
    @login_required
    def add_invoice():
        """New invoice, pre-filled with the next number for the year and Unpaid status."""
        if request.method == 'POST':
            values, errors = _read_invoice_form()
            if errors:
                _flash_errors(errors)
                return redirect(url_for('add_invoice'))

            db.session.add(Invoice(**values))
            if not _commit('creating invoice'):
                return redirect(url_for('add_invoice'))
            flash('Invoice created successfully!')
            return redirect(url_for('invoices'))

        customers_list = Customer.query.order_by(Customer.customer_name).all()
        draft = Invoice(invoice_number=next_invoice_number(), date=date.today(), status='Unpaid', total_amount=0.0)
        return render_template('invoice_form.html', invoice=draft, customers=customers_list, is_new=True)

    @app.route('/invoices/<int:invoice_id>/edit', methods=['GET', 'POST'])
    @login_required
    def edit_invoice(invoice_id):
        invoice = get_or_404(Invoice, invoice_id)

        if request.method == 'POST':
            values, errors = _read_invoice_form(invoice)
            if errors:
                _flash_errors(errors)
                return redirect(url_for('edit_invoice', invoice_id=invoice_id))

            _apply(invoice, values)
            if invoice.items:
                # Itemised invoices always total their lines
                recalculate_invoice_total(invoice)
            if not _commit('updating invoice'):
                return redirect(url_for('edit_invoice', invoice_id=invoice_id))
            flash('Invoice updated successfully!')
            return redirect(url_for('invoices'))

        customers_list = Customer.query.order_by(Customer.customer_name).all()
        return render_template('invoice_form.html', invoice=invoice, customers=customers_list, is_new=False)

    @app.route('/invoices/<int:invoice_id>/delete', methods=['POST'])
    @login_required
    def delete_invoice(invoice_id):
        invoice = get_or_404(Invoice, invoice_id)
        db.session.delete(invoice)
        if _commit('deleting invoice'):
            flash('Invoice deleted successfully!')
        return redirect(url_for('invoices'))

    @app.route('/invoices/<int:invoice_id>/items/add', methods=['POST'])
    @login_required
    def add_invoice_item(invoice_id):
        """Add a product line; a blank unit price takes the catalogue price."""
        invoice = get_or_404(Invoice, invoice_id)
        values, errors = _read_invoice_item_form()
        if errors:
            _flash_errors(errors)
            return redirect(url_for('invoice_detail', invoice_id=invoice_id))

        invoice.items.append(InvoiceItem(**values))
        recalculate_invoice_total(invoice)
        if _commit('adding invoice item'):
            flash('Item added to invoice.')
        return redirect(url_for('invoice_detail', invoice_id=invoice_id))

    @app.route('/invoice-items/<int:item_id>/delete', methods=['POST'])
    @login_required
    def delete_invoice_item(item_id):
        item = get_or_404(InvoiceItem, item_id)
        invoice = item.invoice
        invoice.items.remove(item)
        recalculate_invoice_total(invoice)
        if _commit('removing invoice item'):
            flash('Item removed from invoice.')
        return redirect(url_for('invoice_detail', invoice_id=invoice.id))

    # ==================== REPORTS ROUTES ====================

    @app.route('/reports')
    @login_required
    def reports():
        """Reports hub with links to each report."""
        return render_template('reports.html')

    @app.route('/reports/inventory')
    @login_required
    def report_inventory():
        items = FinishedProduct.query.order_by(FinishedProduct.product_name).all()
        total_value = sum(p.unit_price * p.quantity_available for p in items)
        return render_template('report_inventory.html', products=items, total_value=total_value)

    @app.route('/reports/production')
    @login_required
    def report_production():
        """Batches produced between ``start`` and ``end`` (default: the last 30 days)."""
        end = _parse_query_date('end') or date.today()
        start = _parse_query_date('start') or (end - timedelta(days=30))
        items = ProductionBatch.query.filter(
            ProductionBatch.production_date >= start, ProductionBatch.production_date <= end
        ).order_by(ProductionBatch.production_date.desc()).all()
        total_produced = sum(b.quantity_produced for b in items)
        total_target = sum(b.target_quantity for b in items)
        return render_template('report_production.html', batches=items, start=start, end=end,
                               total_produced=total_produced, total_target=total_target)

    @app.route('/reports/quality')
    @login_required
    def report_quality():
        checks = XRayCheck.query.order_by(XRayCheck.check_time.desc()).all()
        total_checks = len(checks)
        failed_checks = sum(1 for c in checks if c.result == 'Fail')
        pass_rate = ((total_checks - failed_checks) / total_checks * 100) if total_checks else 0.0
        return render_template('report_quality.html', checks=checks, total_checks=total_checks,
                               failed_checks=failed_checks, pass_rate=pass_rate)

    @app.route('/reports/sales')
    @login_required
    def report_sales():
        """Paid invoices only: revenue actually collected."""
        items = Invoice.query.filter(Invoice.status == 'Paid').order_by(Invoice.date.desc()).all()
        total_revenue = sum(i.total_amount for i in items)
        return render_template('report_sales.html', invoices=items, total_revenue=total_revenue)

    @app.route('/reports/shipments')
    @login_required
    def report_shipments():
        items = Shipment.query.order_by(Shipment.date.desc(), Shipment.id.desc()).all()
        return render_template('report_shipments.html', shipments=items)

    # ==================== CLI COMMANDS ====================

    @app.cli.command('seed')
    def seed_command():
        """Load demo users, suppliers, raw materials and products."""
        if seed_demo_data(app.config['SEED_PASSWORD']):
            click.echo('Demo data loaded.')
        else:
            click.echo('Database already contains products; nothing to seed.')

    return app


# ==================== APPLICATION ENTRY POINT ====================

if __name__ == '__main__':
    load_dotenv()
    create_app().run(debug=True, host='127.0.0.1', port=5000)
