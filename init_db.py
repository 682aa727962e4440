"""
Initialize database with demo data for the Dominican Republic invoicing platform
"""
from datetime import date, timedelta

import bcrypt
from main import app, db
import models
from subscriptions import SubscriptionRepository, SubscriptionService


def create_sample_data():
    with app.app_context():
        # Clear existing data
        db.drop_all()
        db.create_all()

        admin = models.User(
            email='admin@facturas.do',
            password_hash=bcrypt.hashpw('admin12345'.encode('utf-8'), bcrypt.gensalt()).decode('utf-8'),
            name='Administrador',
            tax_id='130851255',
            role=models.UserRole.ADMIN,
        )
        demo = models.User(
            email='demo@facturas.do',
            password_hash=bcrypt.hashpw('demo12345'.encode('utf-8'), bcrypt.gensalt()).decode('utf-8'),
            name='Dra. María Rodríguez',
            tax_id='40222222222',
            role=models.UserRole.USER,
        )
        db.session.add_all([admin, demo])
        db.session.flush()

        subscriptions = SubscriptionService(SubscriptionRepository(db.session))
        subscriptions.create_or_update(admin.id, 'pro')
        subscriptions.create_or_update(demo.id, 'free')

        # Lotes NCF de prueba (rango autorizado ficticio)
        expiry = date.today() + timedelta(days=365)
        batches = [
            ('31', 'E'), ('32', 'E'), ('34', 'E'),
            ('01', 'B'), ('02', 'B'), ('04', 'B'),
        ]
        for document_type, series_prefix in batches:
            db.session.add(models.NumberingBatch(
                owner_id=demo.id,
                document_type=document_type,
                series_prefix=series_prefix,
                range_start=1,
                range_end=500,
                cursor=0,
                expires_at=expiry,
                is_active=True,
            ))

        db.session.add(models.Customer(
            owner_id=demo.id,
            name='JUAN PEREZ',
            tax_id='101010101',
            email='juan@example.com',
        ))

        db.session.commit()

        print("Base de datos inicializada con datos de prueba:")
        print("  admin@facturas.do / admin12345 (administrador, plan Pro)")
        print("  demo@facturas.do / demo12345 (plan Free, lotes E31/E32/E34/B01/B02/B04)")


if __name__ == '__main__':
    create_sample_data()
