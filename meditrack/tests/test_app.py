import tempfile
import unittest

from fastapi.testclient import TestClient

from meditrack.app import create_app
from meditrack.config import Settings


def make_settings(**overrides) -> Settings:
    values = {
        "use_in_memory_backends": True,
        "database_url": None,
        "redis_url": None,
        "google_client_id": None,
        "google_client_secret": None,
        "bcrypt_rounds": 4,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class ApiTestCase(unittest.TestCase):
    settings_overrides: dict = {}

    def setUp(self):
        self.app = create_app(make_settings(**self.settings_overrides))
        self.client = TestClient(self.app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def signup(self, username="alice", password="pw1"):
        return self.client.post(
            "/api/auth/signup", json={"username": username, "password": password}
        )


class AuthApiTests(ApiTestCase):
    def test_signup_creates_user_and_session(self):
        response = self.signup()
        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["message"], "Signup successful")
        self.assertEqual(payload["user"]["username"], "alice")
        self.assertIn("sid", response.cookies)

        me = self.client.get("/api/auth/user")
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json(), {"userId": payload["user"]["id"]})

    def test_signup_duplicate_username_conflicts(self):
        self.assertEqual(self.signup().status_code, 201)
        response = self.signup(password="other")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["message"], "Username already exists")

    def test_signup_missing_fields_is_bad_request(self):
        response = self.client.post("/api/auth/signup", json={"username": "alice"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("password", response.json()["message"])

        response = self.client.post(
            "/api/auth/signup", json={"username": "", "password": "pw"}
        )
        self.assertEqual(response.status_code, 400)

    def test_login_scenario(self):
        signup = self.signup("alice", "pw1")
        self.assertEqual(signup.status_code, 201)
        user_id = signup.json()["user"]["id"]
        self.client.cookies.clear()

        ok = self.client.post(
            "/api/auth/login", json={"username": "alice", "password": "pw1"}
        )
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()["user"]["id"], user_id)

        bad = self.client.post(
            "/api/auth/login", json={"username": "alice", "password": "wrong"}
        )
        self.assertEqual(bad.status_code, 401)
        self.assertEqual(bad.json()["message"], "Invalid credentials")

        role = self.client.post("/api/auth/role", json={"role": "doctor"})
        self.assertEqual(role.status_code, 200)
        self.assertEqual(self.client.get("/api/auth/role").json(), {"role": "doctor"})

    def test_signup_rejects_identity_provider_usernames(self):
        response = self.signup(username="google:1234567890")
        self.assertEqual(response.status_code, 400)
        self.assertIn("reserved", response.json()["message"])

    def test_login_unknown_user(self):
        response = self.client.post(
            "/api/auth/login", json={"username": "nobody", "password": "pw"}
        )
        self.assertEqual(response.status_code, 401)

    def test_logout_destroys_session(self):
        self.signup()
        response = self.client.post("/api/auth/logout")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"message": "Logout successful"})
        self.assertEqual(self.client.get("/api/auth/user").status_code, 401)

    def test_logout_without_session(self):
        response = self.client.post("/api/auth/logout")
        self.assertEqual(response.status_code, 200)

    def test_session_routes_require_auth(self):
        for method, path in [
            ("get", "/api/auth/user"),
            ("get", "/api/auth/role"),
            ("get", "/api/auth/details"),
            ("get", "/api/auth/profile-status"),
        ]:
            response = getattr(self.client, method)(path)
            self.assertEqual(response.status_code, 401, path)
            self.assertEqual(response.json()["message"], "Not authenticated")

        response = self.client.post("/api/auth/role", json={"role": "patient"})
        self.assertEqual(response.status_code, 401)
        response = self.client.post("/api/auth/details", json={"name": "A"})
        self.assertEqual(response.status_code, 401)

    def test_forged_session_cookie_is_rejected(self):
        self.client.cookies.set("sid", "not-a-session")
        self.assertEqual(self.client.get("/api/auth/user").status_code, 401)


class RoleApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.signup()

    def test_role_is_unset_after_signup(self):
        response = self.client.get("/api/auth/role")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"role": None})

    def test_repeated_set_role_latest_wins(self):
        first = self.client.post("/api/auth/role", json={"role": "doctor"})
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json(), {"message": "Role updated successfully", "role": "doctor"})

        second = self.client.post("/api/auth/role", json={"role": "patient"})
        self.assertEqual(second.status_code, 200)
        self.assertEqual(self.client.get("/api/auth/role").json(), {"role": "patient"})

    def test_invalid_role_is_rejected(self):
        response = self.client.post("/api/auth/role", json={"role": "nurse"})
        self.assertEqual(response.status_code, 400)
        response = self.client.post("/api/auth/role", json={})
        self.assertEqual(response.status_code, 400)


class DetailsApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.signup()

    def set_role(self, role):
        response = self.client.post("/api/auth/role", json={"role": role})
        self.assertEqual(response.status_code, 200)

    def test_details_require_role(self):
        response = self.client.post("/api/auth/details", json={"name": "Alice"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.client.get("/api/auth/details").status_code, 400)

    def test_details_not_found_before_submission(self):
        self.set_role("patient")
        response = self.client.get("/api/auth/details")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["message"], "Details not found")

    def test_patient_details_round_trip(self):
        self.set_role("patient")
        details = {
            "name": "Alice Smith",
            "contactNo": "555-0100",
            "age": 34,
            "gender": "female",
            "dateOfBirth": "1990-04-01",
            "occupation": "Engineer",
        }
        response = self.client.post("/api/auth/details", json=details)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["message"], "Details saved successfully")

        fetched = self.client.get("/api/auth/details")
        self.assertEqual(fetched.status_code, 200)
        body = fetched.json()
        for key, value in details.items():
            self.assertEqual(body[key], value)
        self.assertEqual(body["role"], "patient")
        self.assertIn("userId", body)

    def test_details_update_keeps_unsent_fields(self):
        self.set_role("patient")
        self.client.post(
            "/api/auth/details",
            json={"name": "Alice", "occupation": "Engineer", "age": 30},
        )
        response = self.client.post(
            "/api/auth/details", json={"name": "Alice", "age": 31}
        )
        self.assertEqual(response.status_code, 200)
        body = self.client.get("/api/auth/details").json()
        self.assertEqual(body["age"], 31)
        self.assertEqual(body["occupation"], "Engineer")

    def test_doctor_details(self):
        self.set_role("doctor")
        details = {
            "name": "Dr Gregory House",
            "contactNo": "555-0199",
            "employeeId": "EMP-42",
            "gender": "male",
            "age": 50,
            "experience": 22,
            "qualifications": "MD",
        }
        response = self.client.post("/api/auth/details", json=details)
        self.assertEqual(response.status_code, 200)
        body = self.client.get("/api/auth/details").json()
        self.assertEqual(body["role"], "doctor")
        self.assertEqual(body["employeeId"], "EMP-42")
        self.assertEqual(body["experience"], 22)

    def test_doctor_experience_out_of_range(self):
        self.set_role("doctor")
        response = self.client.post(
            "/api/auth/details", json={"name": "Dr X", "experience": 200}
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("experience", response.json()["message"])

    def test_family_details_validation(self):
        self.set_role("family")
        bad_gender = self.client.post(
            "/api/auth/details", json={"name": "Bob", "gender": "unknown"}
        )
        self.assertEqual(bad_gender.status_code, 400)

        missing_name = self.client.post(
            "/api/auth/details", json={"relationWithPatient": "son"}
        )
        self.assertEqual(missing_name.status_code, 400)

        ok = self.client.post(
            "/api/auth/details",
            json={
                "name": "Bob",
                "relationWithPatient": "son",
                "patientName": "Alice",
                "gender": "prefer-not-to-say",
                "age": 12,
            },
        )
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()["details"]["patientName"], "Alice")

    def test_family_patient_id_must_exist(self):
        self.set_role("patient")
        patient = self.client.post("/api/auth/details", json={"name": "Alice"}).json()
        patient_id = patient["details"]["id"]

        self.signup(username="bob")
        self.set_role("family")
        unknown = self.client.post(
            "/api/auth/details", json={"name": "Bob", "patientId": "no-such-patient"}
        )
        self.assertEqual(unknown.status_code, 400)
        self.assertIn("patientId", unknown.json()["message"])
        self.assertEqual(self.client.get("/api/auth/details").status_code, 404)

        linked = self.client.post(
            "/api/auth/details", json={"name": "Bob", "patientId": patient_id}
        )
        self.assertEqual(linked.status_code, 200)
        self.assertEqual(linked.json()["details"]["patientId"], patient_id)

    def test_fields_of_other_roles_are_ignored(self):
        self.set_role("patient")
        response = self.client.post(
            "/api/auth/details", json={"name": "Alice", "employeeId": "EMP-1"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertNotIn("employeeId", self.client.get("/api/auth/details").json())

    def test_profile_status_progression(self):
        status = self.client.get("/api/auth/profile-status").json()
        self.assertEqual(
            status,
            {
                "hasRole": False,
                "role": None,
                "hasDetails": False,
                "redirectPath": "/role-selection",
            },
        )

        self.set_role("family")
        status = self.client.get("/api/auth/profile-status").json()
        self.assertTrue(status["hasRole"])
        self.assertEqual(status["redirectPath"], "/details/family")

        self.client.post("/api/auth/details", json={"name": "Bob"})
        status = self.client.get("/api/auth/profile-status").json()
        self.assertTrue(status["hasDetails"])
        self.assertEqual(status["redirectPath"], "/dashboard/family")


class HealthApiTests(ApiTestCase):
    def test_health_reports_memory_mode(self):
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "ok")
        self.assertEqual(payload["storage"]["mode"], "memory")
        self.assertFalse(payload["storage"]["databaseConfigured"])
        self.assertEqual(payload["storage"]["pendingReplay"], 0)
        self.assertNotIn("database_configured", payload["storage"])


class DatabaseBackedApiTests(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        settings = make_settings(
            use_in_memory_backends=False,
            database_url=f"sqlite+aiosqlite:///{tmp.name}/meditrack.db",
            storage_mirror_writes=False,
        )
        self.client = TestClient(create_app(settings))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def test_signup_is_served_by_database(self):
        health = self.client.get("/api/health").json()
        self.assertEqual(health["storage"]["mode"], "database")

        response = self.client.post(
            "/api/auth/signup", json={"username": "alice", "password": "pw1"}
        )
        self.assertEqual(response.status_code, 201)

        context = self.client.app.state.context
        # Mirroring is off, so the record only exists in the database.
        self.assertEqual(context.memory.users, {})
        login = self.client.post(
            "/api/auth/login", json={"username": "alice", "password": "pw1"}
        )
        self.assertEqual(login.status_code, 200)

    def test_unknown_patient_id_is_bad_request(self):
        self.client.post(
            "/api/auth/signup", json={"username": "bob", "password": "pw1"}
        )
        self.client.post("/api/auth/role", json={"role": "family"})
        response = self.client.post(
            "/api/auth/details", json={"name": "Bob", "patientId": "no-such-patient"}
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.client.get("/api/auth/details").status_code, 404)


class UnreachableDatabaseApiTests(unittest.TestCase):
    def setUp(self):
        settings = make_settings(
            use_in_memory_backends=False,
            database_url="sqlite+aiosqlite:////nonexistent-dir/meditrack/db.sqlite",
            database_timeout_seconds=2.0,
        )
        self.client = TestClient(create_app(settings))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def test_operations_fall_back_to_memory(self):
        health = self.client.get("/api/health").json()
        self.assertEqual(health["storage"]["mode"], "memory")
        self.assertTrue(health["storage"]["databaseConfigured"])

        signup = self.client.post(
            "/api/auth/signup", json={"username": "alice", "password": "pw1"}
        )
        self.assertEqual(signup.status_code, 201)
        login = self.client.post(
            "/api/auth/login", json={"username": "alice", "password": "pw1"}
        )
        self.assertEqual(login.status_code, 200)
        self.assertEqual(login.json()["user"]["id"], signup.json()["user"]["id"])


if __name__ == "__main__":
    unittest.main()
