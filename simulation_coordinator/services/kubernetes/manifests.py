"""
Kubernetes Manifests for Simulation Namespaces

Builders for every resource the coordinator creates inside a simulation
namespace:
- Physics server (gzserver) with its world data init container
- Standalone support stack: MQTT broker, mission control, video server,
  mission data recorder backend
- Viewer (gzweb)
- Drone deployment/service/secret triples

Builders only construct kubernetes.client model objects; nothing here talks
to the API server.
"""

from kubernetes import client
from typing import Dict, List, Optional
import logging

import yaml

logger = logging.getLogger(__name__)

MANAGED_BY = "simulation-coordinator"

# Port offsets inside a simulation's external port range
VIDEO_PORT_OFFSET = 0
VIEWER_PORT_OFFSET = 1
MQTT_PORT_OFFSET = 2
GZSERVER_PORT_OFFSET = 3

GZSERVER_NAME = "gzserver"
GZSERVER_GAZEBO_PORT = 11345
GZSERVER_API_PORT = 8081
MQTT_SERVER_NAME = "mqtt-server"
MQTT_PORT = 8883
MISSION_CONTROL_NAME = "mission-control"
MISSION_CONTROL_API_PORT = 8082
MISSION_CONTROL_SSH_PORT = 2222
VIDEO_SERVER_NAME = "video-server"
VIDEO_SERVER_PORT = 8554
RECORDER_NAME = "mission-data-recorder-backend"
RECORDER_PORT = 9423
GZWEB_NAME = "gzweb"
GZWEB_PORT = 8080
DRONE_MAVLINK_PORT = 14560
DRONE_VIDEO_PORT = 5600

GAZEBO_DATA_CONTAINER = "gazebo-data"
GAZEBO_DATA_VOLUME = "gazebo-data-vol"

GPU_MODE_NONE = "none"
GPU_MODE_NVIDIA = "nvidia"
GPU_MODES = (GPU_MODE_NONE, GPU_MODE_NVIDIA)


# =============================================================================
# Labels and naming
# =============================================================================

def get_standard_labels(component: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Get standard labels for simulation resources.

    Args:
        component: Component name (gzserver, mqtt-server, drone, ...)
        extra: Additional labels merged on top

    Returns:
        Dict of labels
    """
    labels = {
        "app.kubernetes.io/managed-by": MANAGED_BY,
        "app.kubernetes.io/component": component,
    }
    if extra:
        labels.update(extra)
    return labels


def deployment_name(component: str) -> str:
    return f"{component}-dep"


def service_name(component: str) -> str:
    return f"{component}-svc"


def public_service_name(component: str) -> str:
    return f"{component}-public-svc"


def drone_name(device_id: str) -> str:
    return f"drone-{device_id}"


def drone_service_name(device_id: str) -> str:
    return f"drone-{device_id}-svc"


def drone_secret_name(device_id: str) -> str:
    return f"drone-{device_id}-secret"


def _image_pull_secrets(pull_secret_name: Optional[str]) -> Optional[List[client.V1LocalObjectReference]]:
    if not pull_secret_name:
        return None
    return [client.V1LocalObjectReference(name=pull_secret_name)]


def _deployment(
    name: str,
    namespace: str,
    pod_labels: Dict[str, str],
    containers: List[client.V1Container],
    pull_secret_name: Optional[str] = None,
    init_containers: Optional[List[client.V1Container]] = None,
    volumes: Optional[List[client.V1Volume]] = None,
    affinity: Optional[client.V1Affinity] = None,
) -> client.V1Deployment:
    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=pod_labels
        ),
        spec=client.V1DeploymentSpec(
            replicas=1,
            selector=client.V1LabelSelector(match_labels={"app": pod_labels["app"]}),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=pod_labels),
                spec=client.V1PodSpec(
                    init_containers=init_containers,
                    containers=containers,
                    volumes=volumes,
                    affinity=affinity,
                    image_pull_secrets=_image_pull_secrets(pull_secret_name)
                )
            )
        )
    )


def _service(
    name: str,
    namespace: str,
    app_label: str,
    ports: List[client.V1ServicePort],
    service_type: str = "ClusterIP",
) -> client.V1Service:
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=get_standard_labels(app_label)
        ),
        spec=client.V1ServiceSpec(
            selector={"app": app_label},
            ports=ports,
            type=service_type
        )
    )


def create_public_service_manifest(
    name: str,
    namespace: str,
    app_label: str,
    port: int,
    target_port: int,
) -> client.V1Service:
    """
    Create a LoadBalancer service publishing one port of a simulation.

    Args:
        name: Service name
        namespace: Simulation namespace
        app_label: Pod "app" label to select
        port: External port (inside the simulation's port range)
        target_port: Container port

    Returns:
        V1Service manifest
    """
    return _service(
        name,
        namespace,
        app_label,
        [client.V1ServicePort(name="public", port=port, target_port=target_port, protocol="TCP")],
        service_type="LoadBalancer",
    )


# =============================================================================
# Physics server
# =============================================================================

def create_gzserver_deployment(
    namespace: str,
    image: str,
    data_image: str,
    pull_policy: str,
    pull_secret_name: Optional[str] = None,
    gpu_mode: str = GPU_MODE_NONE,
    cloud_mode: bool = False,
) -> client.V1Deployment:
    """
    Create the physics server deployment.

    The init container copies the world data (models, worlds, scripts,
    plugins) out of the data image into a shared emptyDir mounted at /data.

    Args:
        namespace: Simulation namespace
        image: Physics server image
        data_image: Image carrying /gazebo-data
        pull_policy: Image pull policy
        pull_secret_name: Name of the image pull secret in the namespace
        gpu_mode: "none" or "nvidia"
        cloud_mode: Schedule onto GPU accelerator nodes (managed clusters)

    Returns:
        V1Deployment manifest
    """
    if gpu_mode not in GPU_MODES:
        raise ValueError(f"Invalid GPU mode: '{gpu_mode}'. Valid modes: {', '.join(GPU_MODES)}")

    data_mount = client.V1VolumeMount(name=GAZEBO_DATA_VOLUME, mount_path="/data")
    volumes = [client.V1Volume(name=GAZEBO_DATA_VOLUME, empty_dir=client.V1EmptyDirVolumeSource())]
    volume_mounts = [data_mount]
    env = []
    resources = None
    affinity = None

    if gpu_mode == GPU_MODE_NVIDIA:
        volumes += [
            client.V1Volume(name="xsock", host_path=client.V1HostPathVolumeSource(path="/tmp/.X11-unix")),
            client.V1Volume(name="xauth", host_path=client.V1HostPathVolumeSource(path="/tmp/.docker.xauth")),
        ]
        volume_mounts += [
            client.V1VolumeMount(name="xsock", mount_path="/tmp/.X11-unix"),
            client.V1VolumeMount(name="xauth", mount_path="/tmp/.docker.xauth"),
        ]
        env += [
            client.V1EnvVar(name="DISPLAY", value=":0"),
            client.V1EnvVar(name="XAUTHORITY", value="/tmp/.docker.xauth"),
            client.V1EnvVar(name="NO_XVFB", value="1"),
        ]
        resources = client.V1ResourceRequirements(limits={"nvidia.com/gpu": "1"})
        if cloud_mode:
            affinity = client.V1Affinity(
                node_affinity=client.V1NodeAffinity(
                    required_during_scheduling_ignored_during_execution=client.V1NodeSelector(
                        node_selector_terms=[
                            client.V1NodeSelectorTerm(
                                match_expressions=[
                                    client.V1NodeSelectorRequirement(
                                        key="cloud.google.com/gke-accelerator",
                                        operator="Exists"
                                    )
                                ]
                            )
                        ]
                    )
                )
            )

    init_container = client.V1Container(
        name=GAZEBO_DATA_CONTAINER,
        image=data_image,
        image_pull_policy=pull_policy,
        command=["cp", "-r", "/gazebo-data/models", "/gazebo-data/worlds",
                 "/gazebo-data/scripts", "/gazebo-data/plugins", "/data"],
        volume_mounts=[data_mount]
    )
    container = client.V1Container(
        name=GZSERVER_NAME,
        image=image,
        image_pull_policy=pull_policy,
        env=env or None,
        resources=resources,
        ports=[
            client.V1ContainerPort(name="gazebo", container_port=GZSERVER_GAZEBO_PORT),
            client.V1ContainerPort(name="api", container_port=GZSERVER_API_PORT),
        ],
        volume_mounts=volume_mounts
    )

    return _deployment(
        deployment_name(GZSERVER_NAME),
        namespace,
        get_standard_labels(GZSERVER_NAME, {"app": "gzserver-pod"}),
        [container],
        pull_secret_name=pull_secret_name,
        init_containers=[init_container],
        volumes=volumes,
        affinity=affinity,
    )


def create_gzserver_service(namespace: str) -> client.V1Service:
    return _service(
        service_name(GZSERVER_NAME),
        namespace,
        "gzserver-pod",
        [
            client.V1ServicePort(name="gazebo", port=GZSERVER_GAZEBO_PORT, target_port=GZSERVER_GAZEBO_PORT),
            client.V1ServicePort(name="api", port=GZSERVER_API_PORT, target_port=GZSERVER_API_PORT),
        ]
    )


def get_data_image(deployment: client.V1Deployment) -> Optional[str]:
    """Find the world data image used by a physics server deployment."""
    for container in deployment.spec.template.spec.init_containers or []:
        if container.name == GAZEBO_DATA_CONTAINER:
            return container.image
    return None


# =============================================================================
# Standalone stack
# =============================================================================

def _simple_container(name: str, image: str, pull_policy: str, args=None, env=None, ports=None,
                      volume_mounts=None) -> client.V1Container:
    return client.V1Container(
        name=name,
        image=image,
        image_pull_policy=pull_policy,
        args=args,
        env=env,
        ports=ports,
        volume_mounts=volume_mounts
    )


def create_mqtt_server_deployment(namespace: str, image: str, pull_policy: str,
                                  pull_secret_name: Optional[str] = None) -> client.V1Deployment:
    container = _simple_container(
        MQTT_SERVER_NAME, image, pull_policy,
        ports=[client.V1ContainerPort(name="mqtt", container_port=MQTT_PORT)]
    )
    return _deployment(
        deployment_name(MQTT_SERVER_NAME),
        namespace,
        get_standard_labels(MQTT_SERVER_NAME, {"app": f"{MQTT_SERVER_NAME}-pod"}),
        [container],
        pull_secret_name=pull_secret_name,
    )


def create_mqtt_server_service(namespace: str) -> client.V1Service:
    return _service(
        service_name(MQTT_SERVER_NAME),
        namespace,
        f"{MQTT_SERVER_NAME}-pod",
        [client.V1ServicePort(name="mqtt", port=MQTT_PORT, target_port=MQTT_PORT)]
    )


def create_mission_control_deployment(namespace: str, image: str, pull_policy: str,
                                      pull_secret_name: Optional[str] = None) -> client.V1Deployment:
    container = _simple_container(
        MISSION_CONTROL_NAME, image, pull_policy,
        args=[
            f"{service_name(MISSION_CONTROL_NAME)}:{MISSION_CONTROL_SSH_PORT}",
            f"tcp://{service_name(MQTT_SERVER_NAME)}:{MQTT_PORT}",
        ],
        ports=[
            client.V1ContainerPort(name="api", container_port=MISSION_CONTROL_API_PORT),
            client.V1ContainerPort(name="ssh", container_port=MISSION_CONTROL_SSH_PORT),
        ]
    )
    return _deployment(
        deployment_name(MISSION_CONTROL_NAME),
        namespace,
        get_standard_labels(MISSION_CONTROL_NAME, {"app": f"{MISSION_CONTROL_NAME}-pod"}),
        [container],
        pull_secret_name=pull_secret_name,
    )


def create_mission_control_service(namespace: str) -> client.V1Service:
    return _service(
        service_name(MISSION_CONTROL_NAME),
        namespace,
        f"{MISSION_CONTROL_NAME}-pod",
        [
            client.V1ServicePort(name="api", port=MISSION_CONTROL_API_PORT, target_port=MISSION_CONTROL_API_PORT),
            client.V1ServicePort(name="ssh", port=MISSION_CONTROL_SSH_PORT, target_port=MISSION_CONTROL_SSH_PORT),
        ]
    )


def create_video_server_secret(namespace: str, cert_pem: str, key_pem: str) -> client.V1Secret:
    return client.V1Secret(
        metadata=client.V1ObjectMeta(
            name=f"{VIDEO_SERVER_NAME}-secret",
            namespace=namespace,
            labels=get_standard_labels(VIDEO_SERVER_NAME)
        ),
        string_data={"server.crt": cert_pem, "server.key": key_pem}
    )


def create_video_server_deployment(namespace: str, image: str, pull_policy: str, username: str,
                                   password: str, pull_secret_name: Optional[str] = None) -> client.V1Deployment:
    """
    Create the RTSP video server deployment.

    TLS material is mounted from the video-server-secret at /certs.
    """
    container = _simple_container(
        VIDEO_SERVER_NAME, image, pull_policy,
        env=[
            client.V1EnvVar(name="RTSP_USERNAME", value=username),
            client.V1EnvVar(name="RTSP_PASSWORD", value=password),
        ],
        ports=[client.V1ContainerPort(name="rtsp", container_port=VIDEO_SERVER_PORT)],
        volume_mounts=[client.V1VolumeMount(name="certs", mount_path="/certs", read_only=True)]
    )
    deployment = _deployment(
        deployment_name(VIDEO_SERVER_NAME),
        namespace,
        get_standard_labels(VIDEO_SERVER_NAME, {"app": f"{VIDEO_SERVER_NAME}-pod"}),
        [container],
        pull_secret_name=pull_secret_name,
        volumes=[
            client.V1Volume(
                name="certs",
                secret=client.V1SecretVolumeSource(secret_name=f"{VIDEO_SERVER_NAME}-secret")
            )
        ],
    )
    return deployment


def create_video_server_service(namespace: str) -> client.V1Service:
    return _service(
        service_name(VIDEO_SERVER_NAME),
        namespace,
        f"{VIDEO_SERVER_NAME}-pod",
        [client.V1ServicePort(name="rtsp", port=VIDEO_SERVER_PORT, target_port=VIDEO_SERVER_PORT)]
    )


# =============================================================================
# Mission data recorder backend
# =============================================================================

def create_recorder_config_map(
    namespace: str,
    host: str,
    storage_directory: Optional[str] = None,
    bucket: Optional[str] = None,
    service_account: Optional[str] = None,
) -> client.V1ConfigMap:
    """
    Create the recorder backend's config.yaml.

    Exactly one storage backend must be configured: a host directory or a
    cloud bucket.

    Args:
        namespace: Simulation namespace
        host: Public base URL the backend reports to drones
        storage_directory: Host directory for recorded bags
        bucket: Cloud storage bucket name
        service_account: Service account email for the bucket

    Returns:
        V1ConfigMap manifest
    """
    if bool(storage_directory) == bool(bucket):
        raise ValueError("exactly one of storage_directory and bucket must be set")

    recorder_config = {"port": RECORDER_PORT, "host": host}
    if storage_directory:
        recorder_config["fileStorageDirectory"] = "/data"
    else:
        recorder_config["bucketName"] = bucket
        recorder_config["serviceAccount"] = service_account
        recorder_config["keyFile"] = "/secrets/key.json"

    return client.V1ConfigMap(
        metadata=client.V1ObjectMeta(
            name=f"{RECORDER_NAME}-config",
            namespace=namespace,
            labels=get_standard_labels(RECORDER_NAME)
        ),
        data={"config.yaml": yaml.safe_dump(recorder_config, sort_keys=False)}
    )


def create_recorder_key_secret(namespace: str, key_json: str) -> client.V1Secret:
    return client.V1Secret(
        metadata=client.V1ObjectMeta(
            name=f"{RECORDER_NAME}-secret",
            namespace=namespace,
            labels=get_standard_labels(RECORDER_NAME)
        ),
        string_data={"key.json": key_json}
    )


def create_recorder_deployment(namespace: str, image: str, pull_policy: str,
                               storage_directory: Optional[str] = None,
                               pull_secret_name: Optional[str] = None) -> client.V1Deployment:
    volumes = [
        client.V1Volume(
            name="config",
            config_map=client.V1ConfigMapVolumeSource(name=f"{RECORDER_NAME}-config")
        )
    ]
    mounts = [client.V1VolumeMount(name="config", mount_path="/config")]
    if storage_directory:
        volumes.append(client.V1Volume(
            name="data",
            host_path=client.V1HostPathVolumeSource(path=storage_directory, type="DirectoryOrCreate")
        ))
        mounts.append(client.V1VolumeMount(name="data", mount_path="/data"))
    else:
        volumes.append(client.V1Volume(
            name="key",
            secret=client.V1SecretVolumeSource(secret_name=f"{RECORDER_NAME}-secret")
        ))
        mounts.append(client.V1VolumeMount(name="key", mount_path="/secrets", read_only=True))

    container = _simple_container(
        RECORDER_NAME, image, pull_policy,
        args=["-config", "/config/config.yaml"],
        ports=[client.V1ContainerPort(name="http", container_port=RECORDER_PORT)],
        volume_mounts=mounts
    )
    return _deployment(
        deployment_name(RECORDER_NAME),
        namespace,
        get_standard_labels(RECORDER_NAME, {"app": f"{RECORDER_NAME}-pod"}),
        [container],
        pull_secret_name=pull_secret_name,
        volumes=volumes,
    )


def create_recorder_service(namespace: str) -> client.V1Service:
    return _service(
        service_name(RECORDER_NAME),
        namespace,
        f"{RECORDER_NAME}-pod",
        [client.V1ServicePort(name="http", port=80, target_port=RECORDER_PORT)]
    )


# =============================================================================
# Viewer
# =============================================================================

def create_gzweb_deployment(namespace: str, image: str, data_image: str, pull_policy: str,
                            coordinator_url: str, pull_secret_name: Optional[str] = None) -> client.V1Deployment:
    """
    Create the browser viewer deployment.

    The viewer connects to the physics server's gazebo port and validates
    viewer ids against the coordinator before serving a client.
    """
    data_mount = client.V1VolumeMount(name=GAZEBO_DATA_VOLUME, mount_path="/data")
    init_container = client.V1Container(
        name=GAZEBO_DATA_CONTAINER,
        image=data_image,
        image_pull_policy=pull_policy,
        command=["cp", "-r", "/gazebo-data/models", "/data"],
        volume_mounts=[data_mount]
    )
    container = _simple_container(
        GZWEB_NAME, image, pull_policy,
        args=[f"http://{service_name(GZSERVER_NAME)}:{GZSERVER_GAZEBO_PORT}"],
        env=[
            client.V1EnvVar(name="SIMULATION_COORDINATOR_URL", value=coordinator_url),
            client.V1EnvVar(name="ENABLE_AUTHENTICATION", value="true"),
        ],
        ports=[client.V1ContainerPort(name="http", container_port=GZWEB_PORT)],
        volume_mounts=[data_mount]
    )
    return _deployment(
        deployment_name(GZWEB_NAME),
        namespace,
        get_standard_labels(GZWEB_NAME, {"app": f"{GZWEB_NAME}-pod"}),
        [container],
        pull_secret_name=pull_secret_name,
        init_containers=[init_container],
        volumes=[client.V1Volume(name=GAZEBO_DATA_VOLUME, empty_dir=client.V1EmptyDirVolumeSource())],
    )


def create_gzweb_service(namespace: str, port: int) -> client.V1Service:
    return create_public_service_manifest(service_name(GZWEB_NAME), namespace, f"{GZWEB_NAME}-pod", port, GZWEB_PORT)


# =============================================================================
# Drones
# =============================================================================

def create_drone_secret(namespace: str, device_id: str, private_key: str) -> client.V1Secret:
    return client.V1Secret(
        metadata=client.V1ObjectMeta(
            name=drone_secret_name(device_id),
            namespace=namespace,
            labels=get_standard_labels("drone", {"drone-device-id": device_id})
        ),
        string_data={"DRONE_IDENTITY_KEY": private_key}
    )


def create_drone_deployment(
    namespace: str,
    device_id: str,
    image: str,
    pull_policy: str,
    mqtt_broker_address: str,
    rtsp_server_address: str,
    recorder_url: str,
    record_size_threshold: int,
    record_topics: List[str],
    pull_secret_name: Optional[str] = None,
) -> client.V1Deployment:
    """
    Create a drone deployment.

    The identity key is referenced from the drone's secret and never copied
    into the pod spec.

    Args:
        namespace: Simulation namespace
        device_id: Drone device ID
        image: Drone image
        pull_policy: Image pull policy
        mqtt_broker_address: Broker URL the drone connects to
        rtsp_server_address: Video server URL the drone streams to
        recorder_url: Mission data recorder backend URL
        record_size_threshold: Bag size (bytes) before upload
        record_topics: ROS topics to record
        pull_secret_name: Name of the image pull secret

    Returns:
        V1Deployment manifest
    """
    name = drone_name(device_id)
    env = [
        client.V1EnvVar(name="DRONE_DEVICE_ID", value=device_id),
        client.V1EnvVar(
            name="DRONE_IDENTITY_KEY",
            value_from=client.V1EnvVarSource(
                secret_key_ref=client.V1SecretKeySelector(
                    name=drone_secret_name(device_id),
                    key="DRONE_IDENTITY_KEY",
                    optional=False
                )
            )
        ),
        client.V1EnvVar(name="MQTT_BROKER_ADDRESS", value=mqtt_broker_address),
        client.V1EnvVar(name="RTSP_SERVER_ADDRESS", value=rtsp_server_address),
        client.V1EnvVar(name="MISSION_DATA_RECORDER_BACKEND_URL", value=recorder_url),
        client.V1EnvVar(name="MISSION_DATA_RECORDER_SIZE_THRESHOLD", value=str(record_size_threshold)),
        client.V1EnvVar(name="MISSION_DATA_RECORDER_TOPICS", value=",".join(record_topics)),
    ]
    container = client.V1Container(
        name=name,
        image=image,
        image_pull_policy=pull_policy,
        stdin=True,
        tty=True,
        env=env
    )
    return _deployment(
        name,
        namespace,
        get_standard_labels("drone", {"app": name, "drone-device-id": device_id}),
        [container],
        pull_secret_name=pull_secret_name,
    )


def create_drone_service(namespace: str, device_id: str) -> client.V1Service:
    return _service(
        drone_service_name(device_id),
        namespace,
        drone_name(device_id),
        [
            client.V1ServicePort(name="mavlink-udp", port=DRONE_MAVLINK_PORT, target_port=DRONE_MAVLINK_PORT,
                                 protocol="UDP"),
            client.V1ServicePort(name="gst-cam-udp", port=DRONE_VIDEO_PORT, target_port=DRONE_VIDEO_PORT,
                                 protocol="UDP"),
        ]
    )
