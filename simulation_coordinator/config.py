from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List

DEFAULT_PUBSUB_SUBSCRIPTIONS = ",".join(
    f"iot-device-{topic}-simulation-coordinator"
    for topic in ("debug-events", "debug-values", "imu", "location", "telemetry")
)


class Settings(BaseSettings):
    # API authentication (bearer JWT)
    enable_auth: bool = True
    secret_key: str = ""
    algorithm: str = "HS256"

    # Namespace the coordinator itself runs in. Holds the image pull secret
    # that is copied into every simulation namespace.
    coordinator_namespace: str = Field(
        default="dronsole",
        validation_alias="SIMULATION_COORDINATOR_NAMESPACE",
    )
    image_pull_secret_name: str = "dockerconfigjson"
    image_pull_policy: str = "IfNotPresent"

    # Device transport: "broker" (per-simulation MQTT brokers) or "cloud"
    # (cloud device registry + Pub/Sub event stream)
    deployment_mode: str = "broker"

    # Publish the physics server and the broker through LoadBalancer services
    # so that a coordinator running outside the cluster can reach them
    out_cluster_mode: bool = False

    # GPU mode for the physics server: "none" or "nvidia"
    default_gpu_mode: str = "none"

    # Expiry
    default_expiry_seconds: int = 48 * 3600
    expiry_check_interval_seconds: int = 3600

    # Bounded waits
    provisioning_timeout_seconds: float = 300.0
    load_balancer_timeout_seconds: float = 300.0

    # Images
    gzserver_image: str = "ghcr.io/tiiuae/tii-gzserver:dev"
    gzweb_image: str = "ghcr.io/tiiuae/tii-gzweb:latest"
    drone_image: str = "ghcr.io/tiiuae/tii-fog-drone:dev"
    mqtt_server_image: str = "ghcr.io/tiiuae/tii-mqtt-server:latest"
    mission_control_image: str = "ghcr.io/tiiuae/tii-mission-control:latest"
    video_server_image: str = "ghcr.io/tiiuae/tii-video-server:latest"
    mission_data_recorder_backend_image: str = "ghcr.io/tiiuae/tii-mission-data-recorder-backend:latest"
    default_data_image: str = "ghcr.io/tiiuae/tii-gazebo-data:latest"

    # Shared cloud services used by global simulations
    mqtt_server_url: str = "ssl://mqtt.googleapis.com:8883"
    mqtt_password: str = ""
    cloud_project_id: str = "auto-fleet-mgnt"
    cloud_region: str = "europe-west1"
    default_tenant_id: str = "fleet-registry"
    device_registry_url: str = "https://cloudiot.googleapis.com/v1"
    device_registry_token: str = ""

    # Comma-separated Pub/Sub subscription names fed into the event bridge
    pubsub_subscriptions: str = DEFAULT_PUBSUB_SUBSCRIPTIONS

    # Mission data recorder storage. A host directory wins over the cloud key.
    mission_data_directory: str = ""
    mission_data_recorder_key: str = ""
    mission_data_bucket: str = "mission-data-recorder"

    # Video server (RTSP) credentials and TLS material
    video_server_username: str = "dronsole"
    video_server_password: str = ""
    video_server_cert: str = ""
    video_server_key: str = ""

    # Shared services used by drones of global simulations
    global_video_server_url: str = ""
    global_mission_data_recorder_url: str = ""

    # Drone recording defaults
    default_record_size_threshold: int = 10_000_000

    # Base URL the viewer calls back to validate viewer ids
    coordinator_url: str = "http://simulation-coordinator-svc.dronsole:8087"

    # Event subscription buffer size per subscriber
    subscriber_buffer_size: int = 64

    # HTTP server
    host: str = "0.0.0.0"
    port: int = 8087

    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    @property
    def pubsub_subscription_list(self) -> List[str]:
        """Parse the comma-separated subscription names."""
        return [s.strip() for s in self.pubsub_subscriptions.split(",") if s.strip()]

    @property
    def is_cloud_mode(self) -> bool:
        """Check if devices are reached through the cloud registry."""
        return self.deployment_mode.lower() == "cloud"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        case_sensitive = False
        populate_by_name = True


@lru_cache()
def get_settings():
    return Settings()
