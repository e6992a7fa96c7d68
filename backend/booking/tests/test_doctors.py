from datetime import time

from rest_framework import status
from rest_framework.test import APITestCase

from booking.models import Availability, DoctorProfile, UserProfile

from .utils import add_window, future_day, make_doctor, make_user


PROFILE = {
    "bio"             : "General practitioner",
    "specialties"     : ["General Practice"],
    "clinic_address"  : "42 Harbour Road, Boston",
    "clinic_lat"      : 42.3601,
    "clinic_lng"      : -71.0589,
    "consultation_fee": "75.00",
    "timezone"        : "America/New_York",
}


class DoctorProfileTests(APITestCase):

    def setUp(self):
        self.doctor_user = make_user("dr_house", role=UserProfile.ROLE_DOCTOR)

    def test_doctor_creates_profile(self):
        self.client.force_authenticate(self.doctor_user)

        response = self.client.post("/api/doctors/", PROFILE, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        doctor = DoctorProfile.objects.get(user=self.doctor_user)
        self.assertEqual(doctor.specialties, ["General Practice"])
        self.assertEqual(doctor.timezone, "America/New_York")

    def test_second_profile_is_rejected(self):
        self.client.force_authenticate(self.doctor_user)
        self.client.post("/api/doctors/", PROFILE, format="json")

        response = self.client.post("/api/doctors/", PROFILE, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"], "Doctor profile already exists")

    def test_patient_cannot_create_profile(self):
        self.client.force_authenticate(make_user("pat"))

        response = self.client.post("/api/doctors/", PROFILE, format="json")

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_profile_validation(self):
        self.client.force_authenticate(self.doctor_user)

        response = self.client.post(
            "/api/doctors/",
            {**PROFILE, "specialties": [], "clinic_lat": 120, "consultation_fee": "-1", "timezone": "Mars/Olympus"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(
            set(response.data["errors"]), {"specialties", "clinic_lat", "consultation_fee", "timezone"},
        )

    def test_owner_updates_profile(self):
        doctor = make_doctor("dr_smith")
        self.client.force_authenticate(doctor.user)

        response = self.client.patch(f"/api/doctors/{doctor.pk}/", {"consultation_fee": "150.00"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        doctor.refresh_from_db()
        self.assertEqual(str(doctor.consultation_fee), "150.00")

    def test_other_user_cannot_update_profile(self):
        doctor = make_doctor("dr_smith")
        self.client.force_authenticate(self.doctor_user)

        response = self.client.patch(f"/api/doctors/{doctor.pk}/", {"consultation_fee": "1.00"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_public_detail(self):
        doctor = make_doctor("dr_smith")

        response = self.client.get(f"/api/doctors/{doctor.pk}/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["name"], "Sarah Smith")


class DoctorSearchTests(APITestCase):

    def setUp(self):
        # Manhattan, Brooklyn and Philadelphia
        self.manhattan = make_doctor("dr_manhattan", lat=40.7128, lng=-74.0060, specialties=["Cardiology"])
        self.brooklyn = make_doctor(
            "dr_brooklyn", lat=40.6782, lng=-73.9442, specialties=["Dermatology"], bio="Skin care specialist",
        )
        self.philly = make_doctor("dr_philly", lat=39.9526, lng=-75.1652, specialties=["cardiology", "Surgery"])

    def test_list_is_public_and_paginated(self):
        response = self.client.get("/api/doctors/", {"limit": 2})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data["data"]), 2)
        self.assertEqual(response.data["pagination"], {"page": 1, "limit": 2, "total": 3, "total_pages": 2})

    def test_filter_by_specialty_is_case_insensitive(self):
        response = self.client.get("/api/doctors/search/", {"specialty": "Cardiology"})

        ids = {d["id"] for d in response.data["data"]}
        self.assertEqual(ids, {self.manhattan.pk, self.philly.pk})

    def test_text_search_matches_bio(self):
        response = self.client.get("/api/doctors/search/", {"q": "skin"})

        self.assertEqual([d["id"] for d in response.data["data"]], [self.brooklyn.pk])

    def test_location_search_sorts_by_distance(self):
        response = self.client.get("/api/doctors/search/", {"lat": 40.6782, "lng": -73.9442, "radius_km": 20})

        data = response.data["data"]
        self.assertEqual([d["id"] for d in data], [self.brooklyn.pk, self.manhattan.pk])
        self.assertEqual(data[0]["distance_km"], 0)
        self.assertEqual(data[0]["distance"], "0m")
        self.assertEqual(response.data["pagination"]["total"], 2)

    def test_lat_without_lng_is_rejected(self):
        response = self.client.get("/api/doctors/search/", {"lat": 40.7})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_radius_bounds(self):
        response = self.client.get("/api/doctors/search/", {"lat": 40.7, "lng": -74.0, "radius_km": 500})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class AvailabilityTests(APITestCase):

    def setUp(self):
        self.doctor = make_doctor()
        self.day = future_day()

    def test_owner_adds_weekly_window_by_day_name(self):
        self.client.force_authenticate(self.doctor.user)

        response = self.client.post(
            f"/api/doctors/{self.doctor.pk}/availability/",
            {"day_of_week": "MONDAY", "start_time": "09:00", "end_time": "17:00", "slot_duration_mins": 30},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        window = Availability.objects.get()
        self.assertEqual(window.day_of_week, 0)
        self.assertEqual(response.data["start_time"], "09:00")

    def test_end_before_start_is_rejected(self):
        self.client.force_authenticate(self.doctor.user)

        response = self.client.post(
            f"/api/doctors/{self.doctor.pk}/availability/",
            {"day_of_week": 1, "start_time": "17:00", "end_time": "09:00"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_day_or_date_is_required(self):
        self.client.force_authenticate(self.doctor.user)

        response = self.client.post(
            f"/api/doctors/{self.doctor.pk}/availability/",
            {"start_time": "09:00", "end_time": "10:00"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_other_doctor_cannot_add_window(self):
        other = make_doctor("dr_other")
        self.client.force_authenticate(other.user)

        response = self.client.post(
            f"/api/doctors/{self.doctor.pk}/availability/",
            {"day_of_week": 1, "start_time": "09:00", "end_time": "10:00"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_slots_for_date(self):
        add_window(self.doctor, self.day, time(9, 0), time(10, 0))

        response = self.client.get(f"/api/doctors/{self.doctor.pk}/availability/", {"date": self.day.isoformat()})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["date"], self.day.isoformat())
        self.assertEqual(len(response.data["slots"]), 2)

    def test_slots_for_range(self):
        add_window(self.doctor, self.day, time(9, 0), time(10, 0))

        response = self.client.get(
            f"/api/doctors/{self.doctor.pk}/availability/",
            {"start_date": self.day.isoformat(), "end_date": self.day.isoformat()},
        )

        self.assertEqual(len(response.data["days"]), 1)

    def test_range_too_long(self):
        response = self.client.get(
            f"/api/doctors/{self.doctor.pk}/availability/",
            {"start_date": "2030-01-01", "end_date": "2030-03-01"},
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_list_and_remove_windows(self):
        window = add_window(self.doctor, self.day)
        self.client.force_authenticate(self.doctor.user)

        self.assertEqual(len(self.client.get(f"/api/doctors/{self.doctor.pk}/availability/").data), 1)

        response = self.client.delete(f"/api/doctors/{self.doctor.pk}/availability/{window.pk}/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        window.refresh_from_db()
        self.assertFalse(window.is_active)
        self.assertEqual(self.client.get(f"/api/doctors/{self.doctor.pk}/availability/").data, [])
