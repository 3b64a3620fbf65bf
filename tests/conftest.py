"""
Shared fixtures for all tests.

factory-boy factories live here so both unit/ and integration/ can import them.
"""
import pytest
from datetime import date
from django.test import Client

import factory
from patientflow.intake.types import HospitalRef, IntakeContext
from patientflow.models import Hospital, Patient


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class HospitalFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Hospital

    name = factory.Sequence(lambda n: f'General Hospital {n}')
    subdomain = factory.Sequence(lambda n: f'general{n}')
    patient_id_format = 'prefix_number'
    patient_id_prefix = 'PT'
    patient_id_digits = 6
    patient_id_auto_increment = True
    patient_id_last_number = 0


class PatientFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Patient

    hospital = factory.SubFactory(HospitalFactory)
    patient_number = factory.Sequence(lambda n: f'PT{n:06d}')
    first_name = 'John'
    last_name = 'Doe'
    date_of_birth = date(1990, 1, 15)
    gender = 'Male'
    contact_number = '555-0100'
    address = '1 Main St'
    emergency_contact = {'name': 'Mary Doe', 'relationship': 'Spouse', 'phone': '555-0101'}
    registration_type = 'new'
    priority_level = 'normal'
    current_flow_step = 'triage'
    payment_method = 'cash'


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def api_client():
    """Django test client for integration tests."""
    return Client()


@pytest.fixture
def hospital(db):
    return HospitalFactory(subdomain='general', name='General Hospital')


@pytest.fixture
def context(hospital):
    return IntakeContext(hospital=hospital.as_ref(), user_id=None)


@pytest.fixture
def plain_context():
    """不需要数据库的 context，给纯逻辑测试用。"""
    return IntakeContext(hospital=HospitalRef(id='h1', name='General Hospital', subdomain='general'))


@pytest.fixture
def new_patient_payload():
    """Minimal valid payload for a non-emergency registration."""
    return {
        'registrationType': 'new',
        'firstName': 'Alice',
        'lastName': 'Wang',
        'dateOfBirth': '1985-03-20',
        'gender': 'Female',
        'contactNumber': '555-0199',
        'email': 'alice@example.com',
        'address': '42 Elm St',
        'emergencyContact': {
            'name': 'Bob Wang',
            'relationship': 'Brother',
            'phone': '555-0198',
        },
        'priorityLevel': 'normal',
        'paymentMethod': 'cash',
        'paymentDetails': {},
    }


@pytest.fixture
def emergency_payload():
    return {
        'registrationType': 'emergency',
        'firstName': 'Jane',
        'lastName': 'Doe',
        'priorityLevel': 'normal',
    }
