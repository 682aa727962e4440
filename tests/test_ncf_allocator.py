"""
Tests del asignador atómico de NCF
Secuencia, formato, vencimiento, rollback y concurrencia real con hilos
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import db, User, UserRole, NumberingBatch
from ncf_allocator import render_identifier, reserve_sequence, allocate_sequence, explain_unavailable
from utils import local_today


class TestRenderIdentifier:

    def test_electronic_pads_to_ten_digits(self):
        assert render_identifier('E', '32', 7) == 'E320000000007'

    def test_traditional_pads_to_eight_digits(self):
        assert render_identifier('B', '01', 7) == 'B0100000007'

    def test_lengths(self):
        assert len(render_identifier('E', '31', 1)) == 13
        assert len(render_identifier('B', '02', 1)) == 11


class TestAllocateSequence:

    def test_sequential_until_exhausted(self, make_user, make_batch):
        owner = make_user()
        batch = make_batch(owner, range_start=1, range_end=3)

        issued = [allocate_sequence(owner.id, '32') for _ in range(3)]
        db.session.commit()

        assert issued == ['E320000000001', 'E320000000002', 'E320000000003']
        assert allocate_sequence(owner.id, '32') is None
        db.session.refresh(batch)
        assert batch.cursor == 3

    def test_first_number_is_range_start(self, make_user, make_batch):
        owner = make_user()
        make_batch(owner, range_start=7, range_end=20)
        assert allocate_sequence(owner.id, '32') == 'E320000000007'

    def test_traditional_series(self, make_user, make_batch):
        owner = make_user()
        make_batch(owner, document_type='02', series_prefix='B')
        assert allocate_sequence(owner.id, '02') == 'B0200000001'

    def test_reserve_returns_batch_and_number(self, make_user, make_batch):
        owner = make_user()
        batch = make_batch(owner, range_start=50, range_end=60)

        reserved = reserve_sequence(owner.id, '32')

        assert reserved.batch_id == batch.id
        assert reserved.number == 50
        assert reserved.identifier == 'E320000000050'

    def test_no_batch_returns_none(self, make_user):
        owner = make_user()
        assert allocate_sequence(owner.id, '31') is None

    def test_inactive_batch_is_ignored(self, make_user, make_batch):
        owner = make_user()
        make_batch(owner, is_active=False)
        assert allocate_sequence(owner.id, '32') is None

    def test_expired_batch_is_ignored(self, make_user, make_batch):
        owner = make_user()
        batch = make_batch(owner, expires_at=local_today() - timedelta(days=1))

        assert allocate_sequence(owner.id, '32') is None
        db.session.refresh(batch)
        assert batch.cursor == 0

    def test_batch_expiring_today_is_usable(self, make_user, make_batch):
        owner = make_user()
        make_batch(owner, expires_at=local_today())
        assert allocate_sequence(owner.id, '32') == 'E320000000001'

    def test_other_owner_batch_is_never_used(self, make_user, make_batch):
        owner = make_user()
        other = make_user()
        make_batch(other)
        assert allocate_sequence(owner.id, '32') is None

    def test_other_document_type_is_never_used(self, make_user, make_batch):
        owner = make_user()
        make_batch(owner, document_type='31')
        assert allocate_sequence(owner.id, '32') is None

    def test_rollback_returns_the_number(self, make_user, make_batch):
        owner = make_user()
        batch = make_batch(owner)

        assert allocate_sequence(owner.id, '32') == 'E320000000001'
        db.session.rollback()

        assert allocate_sequence(owner.id, '32') == 'E320000000001'
        db.session.commit()
        db.session.refresh(batch)
        assert batch.cursor == 1

    def test_replacement_batch_takes_over(self, make_user, make_batch):
        owner = make_user()
        old = make_batch(owner, range_start=1, range_end=2)
        allocate_sequence(owner.id, '32')
        old.is_active = False
        db.session.commit()
        make_batch(owner, range_start=1001, range_end=2000)

        assert allocate_sequence(owner.id, '32') == 'E320000001001'
        db.session.commit()
        db.session.refresh(old)
        assert old.cursor == 1

    def test_second_active_batch_for_same_type_is_rejected(self, make_user, make_batch):
        owner = make_user()
        make_batch(owner, range_start=1, range_end=10)

        with pytest.raises(IntegrityError):
            make_batch(owner, range_start=101, range_end=110)
        db.session.rollback()

        make_batch(owner, range_start=201, range_end=210, is_active=False)
        assert NumberingBatch.query.filter_by(owner_id=owner.id, document_type='32').count() == 2

    def test_only_one_batch_advances_when_two_are_active(self, make_user, make_batch):
        """Filas heredadas sin el índice único: se consume un solo número"""
        db.session.execute(text('DROP INDEX uq_active_batch'))
        db.session.commit()
        owner = make_user()
        first = make_batch(owner, range_start=1, range_end=10)
        second = make_batch(owner, range_start=101, range_end=110)

        assert allocate_sequence(owner.id, '32') == 'E320000000001'
        db.session.commit()

        db.session.refresh(first)
        db.session.refresh(second)
        assert first.cursor == 1
        assert second.cursor == 100

    def test_expiry_follows_local_date(self, make_user, make_batch):
        owner = make_user()
        # 02:00 UTC del 1 de marzo es aún 28 de febrero en Santo Domingo
        make_batch(owner, expires_at=date(2026, 2, 28))
        today = local_today(datetime(2026, 3, 1, 2, 0))

        assert today == date(2026, 2, 28)
        assert allocate_sequence(owner.id, '32', today=today) == 'E320000000001'
        assert allocate_sequence(owner.id, '32', today=local_today(datetime(2026, 3, 1, 4, 0))) is None


class TestExplainUnavailable:

    def test_no_batch(self, make_user):
        owner = make_user()
        code, message = explain_unavailable(owner.id, '31')
        assert code == 'NO_ACTIVE_BATCH'
        assert '31' in message

    def test_expired(self, make_user, make_batch):
        owner = make_user()
        make_batch(owner, expires_at=local_today() - timedelta(days=3))
        code, message = explain_unavailable(owner.id, '32')
        assert code == 'BATCH_EXPIRED'
        assert 'vencido' in message

    def test_exhausted(self, make_user, make_batch):
        owner = make_user()
        make_batch(owner, range_start=1, range_end=1)
        allocate_sequence(owner.id, '32')
        db.session.commit()
        code, message = explain_unavailable(owner.id, '32')
        assert code == 'BATCH_EXHAUSTED'
        assert 'agotada' in message


def _file_engine(tmp_path):
    """
    SQLite en archivo compartido por varios hilos

    SQLite serializa escritores; BEGIN IMMEDIATE toma el lock de escritura al
    iniciar la transacción para que la espera quede en manos del busy timeout.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ncf.db'}",
        connect_args={'timeout': 30, 'check_same_thread': False},
    )

    @event.listens_for(engine, 'connect')
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _begin_immediate(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')

    db.metadata.create_all(engine)
    return engine


def _seed(engine, range_start, range_end):
    with Session(engine) as session:
        owner = User(email='concurrencia@test.do', password_hash='x', name='Concurrencia',
                     tax_id='130851255', role=UserRole.USER)
        session.add(owner)
        session.flush()
        batch = NumberingBatch(owner_id=owner.id, document_type='32', series_prefix='E',
                               range_start=range_start, range_end=range_end, cursor=range_start - 1,
                               expires_at=date.today() + timedelta(days=30), is_active=True)
        session.add(batch)
        session.commit()
        return owner.id, batch.id


class TestConcurrentAllocation:

    def test_many_threads_never_share_a_number(self, tmp_path):
        engine = _file_engine(tmp_path)
        owner_id, batch_id = _seed(engine, 1, 40)

        def worker(_):
            with Session(engine) as session:
                identifier = allocate_sequence(owner_id, '32', session=session)
                session.commit()
                return identifier

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(worker, range(60)))

        issued = [r for r in results if r is not None]
        assert len(issued) == 40
        assert len(set(issued)) == 40
        assert results.count(None) == 20
        assert sorted(issued) == [render_identifier('E', '32', n) for n in range(1, 41)]

        with Session(engine) as session:
            assert session.get(NumberingBatch, batch_id).cursor == 40
        engine.dispose()

    def test_last_slot_goes_to_exactly_one_caller(self, tmp_path):
        engine = _file_engine(tmp_path)
        owner_id, batch_id = _seed(engine, 5, 5)
        barrier = threading.Barrier(2)

        def worker(_):
            barrier.wait()
            with Session(engine) as session:
                identifier = allocate_sequence(owner_id, '32', session=session)
                session.commit()
                return identifier

        with ThreadPoolExecutor(max_workers=2) as executor:
            results = list(executor.map(worker, range(2)))

        assert sorted(results, key=lambda r: r is None) == ['E320000000005', None]

        with Session(engine) as session:
            assert session.get(NumberingBatch, batch_id).cursor == 5
        engine.dispose()

    def test_rolled_back_reservation_is_reissued(self, tmp_path):
        engine = _file_engine(tmp_path)
        owner_id, _ = _seed(engine, 1, 10)

        with Session(engine) as session:
            assert allocate_sequence(owner_id, '32', session=session) == 'E320000000001'
            session.rollback()

        with Session(engine) as session:
            assert allocate_sequence(owner_id, '32', session=session) == 'E320000000001'
            session.commit()
        engine.dispose()
