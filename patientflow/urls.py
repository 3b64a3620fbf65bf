from django.urls import path
from .views import (
    IntakeRequirementsView,
    IntakeValidateView,
    PatientDetailView,
    PatientFlowView,
    PatientIdPreviewView,
    PatientIdSettingsView,
    PatientListCreateView,
    PatientPriorityView,
)

urlpatterns = [
    path('hospitals/<uuid:hospital_id>/intake/requirements/', IntakeRequirementsView.as_view(), name='intake-requirements'),
    path('hospitals/<uuid:hospital_id>/intake/validate/', IntakeValidateView.as_view(), name='intake-validate'),
    path('hospitals/<uuid:hospital_id>/patients/', PatientListCreateView.as_view(), name='patient-list'),
    path('hospitals/<uuid:hospital_id>/patients/<uuid:patient_id>/', PatientDetailView.as_view(), name='patient-detail'),
    path('hospitals/<uuid:hospital_id>/patients/<uuid:patient_id>/flow/', PatientFlowView.as_view(), name='patient-flow'),
    path('hospitals/<uuid:hospital_id>/patients/<uuid:patient_id>/priority/', PatientPriorityView.as_view(), name='patient-priority'),
    path('hospitals/<uuid:hospital_id>/patient-id/preview/', PatientIdPreviewView.as_view(), name='patient-id-preview'),
    path('hospitals/<uuid:hospital_id>/patient-id/settings/', PatientIdSettingsView.as_view(), name='patient-id-settings'),
]
