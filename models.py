from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


db = SQLAlchemy(model_class=Base)
from datetime import datetime, date
from sqlalchemy import String, Integer, Float, DateTime, Date, Boolean, Text, ForeignKey, Enum, JSON, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
import enum


class UserRole(enum.Enum):
    USER = "user"
    ADMIN = "admin"


class SeriesPrefix(enum.Enum):
    ELECTRONIC = "E"
    TRADITIONAL = "B"


class DocumentStatus(enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    MODIFIED = "modified"  # Terminal: ya tiene nota de crédito


# Catálogo DGII de tipos de comprobante por serie
ELECTRONIC_DOCUMENT_TYPES = {
    '31': 'Factura de Crédito Fiscal Electrónica',
    '32': 'Factura de Consumo Electrónica',
    '33': 'Nota de Débito Electrónica',
    '34': 'Nota de Crédito Electrónica',
    '41': 'Compras Electrónico',
    '43': 'Gastos Menores Electrónico',
    '44': 'Regímenes Especiales Electrónico',
    '45': 'Gubernamental Electrónico',
}

TRADITIONAL_DOCUMENT_TYPES = {
    '01': 'Factura de Crédito Fiscal',
    '02': 'Factura de Consumo',
    '03': 'Nota de Débito',
    '04': 'Nota de Crédito',
    '11': 'Comprobante de Compras',
    '13': 'Gastos Menores',
    '14': 'Regímenes Especiales',
    '15': 'Gubernamental',
}

CREDIT_NOTE_TYPES = ('34', '04')
INVOICE_TYPES = ('31', '32', '44', '45', '01', '02', '14', '15')

# DGII 606: códigos de clasificación de gastos
EXPENSE_CATEGORIES = ('01', '02', '03', '04', '05', '06', '07', '08', '09', '10', '11')

PAYMENT_TYPES = ('efectivo', 'transferencia', 'tarjeta', 'credito', 'mixto', 'otro')


class User(db.Model):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    tax_id: Mapped[str] = mapped_column(String(11), nullable=False)  # RNC/Cédula del emisor
    role: Mapped[UserRole] = mapped_column(Enum(UserRole, native_enum=False), nullable=False, default=UserRole.USER)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_login: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    numbering_batches = relationship("NumberingBatch", back_populates="owner")
    documents = relationship("FiscalDocument", back_populates="owner")
    customers = relationship("Customer", back_populates="owner")
    subscription = relationship("Subscription", back_populates="owner", uselist=False)


class NumberingBatch(db.Model):
    """Rango de NCF autorizado por la DGII para un emisor y tipo de comprobante"""
    __tablename__ = 'numbering_batches'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    document_type: Mapped[str] = mapped_column(String(2), nullable=False)  # e.g., "31", "02"
    series_prefix: Mapped[str] = mapped_column(String(1), nullable=False)  # "E" o "B"
    range_start: Mapped[int] = mapped_column(Integer, nullable=False)
    range_end: Mapped[int] = mapped_column(Integer, nullable=False)
    cursor: Mapped[int] = mapped_column('cursor_value', Integer, nullable=False)  # Último número emitido
    expires_at: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    owner = relationship("User", back_populates="numbering_batches")
    documents = relationship("FiscalDocument", back_populates="batch")

    __table_args__ = (
        db.CheckConstraint('cursor_value >= range_start - 1 AND cursor_value <= range_end', name='cursor_within_range'),
        db.CheckConstraint('range_start >= 1 AND range_end >= range_start', name='valid_range'),
        db.Index('ix_batches_owner_type_active', 'owner_id', 'document_type', 'is_active'),
        # A lo sumo un lote activo por emisor y tipo de comprobante
        db.Index('uq_active_batch', 'owner_id', 'document_type', unique=True,
                 postgresql_where=text('is_active'),
                 sqlite_where=text('is_active = 1')),
    )

    @property
    def is_unused(self):
        return self.cursor == self.range_start - 1

    @property
    def remaining(self):
        return self.range_end - self.cursor

    def to_dict(self):
        return {
            'id': self.id,
            'document_type': self.document_type,
            'series_prefix': self.series_prefix,
            'sequence_type': 'electronic' if self.series_prefix == SeriesPrefix.ELECTRONIC.value else 'traditional',
            'range_start': self.range_start,
            'range_end': self.range_end,
            'cursor': self.cursor,
            'remaining': self.remaining,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class NumberingBatchAudit(db.Model):
    """Audit trail for numbering batch changes"""
    __tablename__ = 'numbering_batch_audit'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(Integer, nullable=False)  # Sin FK: el lote puede borrarse si no se usó
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # 'created', 'edited', 'deactivated', 'superseded', 'deleted'
    before_json: Mapped[dict] = mapped_column(JSON(none_as_null=True), nullable=True)
    after_json: Mapped[dict] = mapped_column(JSON(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    user = relationship("User")


class Customer(db.Model):
    __tablename__ = 'customers'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    tax_id: Mapped[str] = mapped_column(String(11), nullable=False)  # RNC/Cédula
    phone: Mapped[str] = mapped_column(String(20), nullable=True)
    email: Mapped[str] = mapped_column(String(100), nullable=True)
    address: Mapped[str] = mapped_column(Text, nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=True)
    last_invoice_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    owner = relationship("User", back_populates="customers")

    __table_args__ = (
        db.UniqueConstraint('owner_id', 'tax_id', name='unique_owner_customer_tax_id'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'tax_id': self.tax_id,
            'phone': self.phone,
            'email': self.email,
            'address': self.address,
            'notes': self.notes,
            'last_invoice_at': self.last_invoice_at.isoformat() if self.last_invoice_at else None,
        }


class FiscalDocument(db.Model):
    """Factura o nota de crédito con su NCF asignado"""
    __tablename__ = 'fiscal_documents'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    batch_id: Mapped[int] = mapped_column(Integer, ForeignKey('numbering_batches.id'), nullable=False)
    document_type: Mapped[str] = mapped_column(String(2), nullable=False)
    sequence_identifier: Mapped[str] = mapped_column(String(13), nullable=False, unique=True)
    # Nota de crédito: NCF anulado. Factura anulada: NCF de la nota que la anuló.
    related_document: Mapped[str] = mapped_column(String(13), nullable=True)
    status: Mapped[DocumentStatus] = mapped_column(
        Enum(
            DocumentStatus,
            native_enum=False,
            values_callable=lambda e: [m.value for m in e],
            validate_strings=True,
        ),
        nullable=False,
        default=DocumentStatus.PENDING,
    )
    client_name: Mapped[str] = mapped_column(String(200), nullable=False)
    client_tax_id: Mapped[str] = mapped_column(String(11), nullable=False)
    subtotal: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    itbis: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # Retenciones practicadas por terceros (formato 607)
    isr_retention: Mapped[float] = mapped_column(Float, default=0.0)
    itbis_retention: Mapped[float] = mapped_column(Float, default=0.0)
    payment_type: Mapped[str] = mapped_column(String(20), default='efectivo')
    amount_paid: Mapped[float] = mapped_column(Float, default=0.0)
    balance_due: Mapped[float] = mapped_column(Float, default=0.0)
    payment_status: Mapped[str] = mapped_column(String(20), default='pagado')  # pagado, parcial, pendiente
    paid_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    cancelled_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    # Relationships
    owner = relationship("User", back_populates="documents")
    batch = relationship("NumberingBatch", back_populates="documents")
    items = relationship("DocumentItem", back_populates="document", cascade="all, delete-orphan")

    __table_args__ = (
        db.Index('ix_documents_owner_issued', 'owner_id', 'issued_at'),
    )

    @property
    def is_credit_note(self):
        return self.document_type in CREDIT_NOTE_TYPES

    def to_dict(self):
        return {
            'id': self.id,
            'document_type': self.document_type,
            'ncf': self.sequence_identifier,
            'related_document': self.related_document,
            'status': self.status.value,
            'client_name': self.client_name,
            'client_tax_id': self.client_tax_id,
            'subtotal': self.subtotal,
            'itbis': self.itbis,
            'total': self.total,
            'isr_retention': self.isr_retention,
            'itbis_retention': self.itbis_retention,
            'payment_type': self.payment_type,
            'amount_paid': self.amount_paid,
            'balance_due': self.balance_due,
            'payment_status': self.payment_status,
            'issued_at': self.issued_at.isoformat() if self.issued_at else None,
            'items': [item.to_dict() for item in self.items],
        }


class DocumentItem(db.Model):
    __tablename__ = 'document_items'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(Integer, ForeignKey('fiscal_documents.id'), nullable=False)
    description: Mapped[str] = mapped_column(String(300), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    unit_price: Mapped[float] = mapped_column(Float, nullable=False)
    is_exempt: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)  # Exento de ITBIS

    # Relationships
    document = relationship("FiscalDocument", back_populates="items")

    def to_dict(self):
        return {
            'description': self.description,
            'quantity': self.quantity,
            'price': self.unit_price,
            'is_exempt': self.is_exempt,
        }


class Quote(db.Model):
    """Cotización: no consume NCF hasta que se convierte en factura"""
    __tablename__ = 'quotes'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    client_name: Mapped[str] = mapped_column(String(200), nullable=False)
    client_tax_id: Mapped[str] = mapped_column(String(11), nullable=False)
    items: Mapped[list] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default='draft')  # draft, sent, converted
    invoice_id: Mapped[int] = mapped_column(Integer, ForeignKey('fiscal_documents.id'), nullable=True)
    valid_until: Mapped[date] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    invoice = relationship("FiscalDocument")

    def to_dict(self):
        return {
            'id': self.id,
            'client_name': self.client_name,
            'client_tax_id': self.client_tax_id,
            'items': self.items,
            'status': self.status,
            'invoice_id': self.invoice_id,
            'valid_until': self.valid_until.isoformat() if self.valid_until else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Expense(db.Model):
    """Gasto/compra respaldado por NCF del proveedor (datos del formato 606)"""
    __tablename__ = 'expenses'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    supplier_name: Mapped[str] = mapped_column(String(200), nullable=False)
    supplier_tax_id: Mapped[str] = mapped_column(String(11), nullable=False)
    ncf: Mapped[str] = mapped_column(String(13), nullable=False)  # NCF del proveedor
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    itbis: Mapped[float] = mapped_column(Float, default=0.0)
    category: Mapped[str] = mapped_column(String(2), nullable=False)  # 01-11
    payment_method: Mapped[str] = mapped_column(String(2), default='01')  # 01 Efectivo, 02 Cheque, 03 Tarjeta...
    expense_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'supplier_name': self.supplier_name,
            'supplier_tax_id': self.supplier_tax_id,
            'ncf': self.ncf,
            'amount': self.amount,
            'itbis': self.itbis,
            'category': self.category,
            'payment_method': self.payment_method,
            'date': self.expense_date.isoformat() if self.expense_date else None,
        }


class Subscription(db.Model):
    __tablename__ = 'subscriptions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, unique=True)
    plan_id: Mapped[str] = mapped_column(String(20), nullable=False, default='free')
    status: Mapped[str] = mapped_column(String(20), nullable=False, default='active')  # active, cancelled, expired
    external_reference: Mapped[str] = mapped_column(String(100), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)  # None: nunca vence
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    owner = relationship("User", back_populates="subscription")
    payments = relationship("SubscriptionPayment", back_populates="subscription", order_by="SubscriptionPayment.paid_at")

    def to_dict(self):
        return {
            'plan_id': self.plan_id,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
        }


class SubscriptionPayment(db.Model):
    __tablename__ = 'subscription_payments'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    subscription_id: Mapped[int] = mapped_column(Integer, ForeignKey('subscriptions.id'), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default='DOP')
    status: Mapped[str] = mapped_column(String(20), default='completed')
    transaction_id: Mapped[str] = mapped_column(String(100), nullable=True, unique=True)
    paid_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    subscription = relationship("Subscription", back_populates="payments")
