"""Categorised, parameterised command workflows.

Templates use ``<NAME>`` placeholders. Rendering requires a value for every
declared input, checks it against the input's pattern and substitutes it
shell-quoted, so a value can never break out into a second command.
"""

import re
import shlex
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple

from shellpilot.errors import InvalidRequest, NotFound

PLACEHOLDER = re.compile(r"<([A-Z][A-Z0-9_]*)>")

NAME_PATTERN = r"[A-Za-z0-9][A-Za-z0-9_.:/-]*"
PATH_PATTERN = r"[A-Za-z0-9_./-]+"


@dataclass
class UserInput:
    name: str
    description: str
    placeholder: str = ""
    example: str = ""
    type: str = "text"  # text | select
    validation: Optional[str] = None
    auto_detect: Optional[str] = None

    def check(self, value: str) -> Optional[str]:
        if self.validation and not re.fullmatch(self.validation, value):
            return f"{self.name} must match {self.validation}"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WorkflowCommand:
    id: str
    button_text: str
    explanation: str
    template: str
    inputs: List[UserInput] = field(default_factory=list)
    risk_level: str = "low"
    requires_confirmation: bool = False

    def input(self, name: str) -> UserInput:
        for item in self.inputs:
            if item.name == name:
                return item
        raise NotFound(f"workflow command {self.id} has no input {name}")

    def render(self, values: Optional[Dict[str, Any]] = None) -> str:
        values = {key: str(value).strip() for key, value in (values or {}).items() if value is not None}
        missing = [item for item in self.inputs if not values.get(item.name)]
        if missing:
            raise InvalidRequest(
                "missing input: " + ", ".join(item.name for item in missing),
                hint="Please fill in: " + ", ".join(item.description for item in missing),
            )
        problems = [item.check(values[item.name]) for item in self.inputs]
        problems = [problem for problem in problems if problem]
        if problems:
            raise InvalidRequest("; ".join(problems))
        return PLACEHOLDER.sub(
            lambda m: shlex.quote(values[m.group(1)]) if m.group(1) in values else m.group(0),
            self.template,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "button_text": self.button_text,
            "explanation": self.explanation,
            "template": self.template,
            "inputs": [item.to_dict() for item in self.inputs],
            "risk_level": self.risk_level,
            "requires_confirmation": self.requires_confirmation,
        }


@dataclass
class WorkflowSection:
    id: str
    name: str
    description: str
    commands: List[WorkflowCommand] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "commands": [command.to_dict() for command in self.commands],
        }


@dataclass
class WorkflowCategory:
    id: str
    name: str
    description: str
    sections: List[WorkflowSection] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "sections": [section.to_dict() for section in self.sections],
        }


def _text(name, description, example, validation=NAME_PATTERN, placeholder=""):
    return UserInput(name, description, placeholder=placeholder or name.lower().replace("_", "-"),
                     example=example, validation=validation)


def _select(name, description, example, auto_detect, validation=NAME_PATTERN):
    return UserInput(name, description, placeholder=name.lower().replace("_", "-"), example=example,
                     type="select", validation=validation, auto_detect=auto_detect)


_CONTAINERS = 'docker ps -a --format "table {{.Names}}"'
_RUNNING = 'docker ps --format "table {{.Names}}"'
_NETWORKS = 'docker network ls --format "table {{.Name}}"'
_IMAGES = 'docker images --format "table {{.Repository}}:{{.Tag}}"'

FRONTEND_DOCKERFILE = (
    "cat > <FRONTEND_PATH>/Dockerfile << EOF\nFROM node:18\nWORKDIR /app\nCOPY package*.json ./\n"
    'RUN npm install\nCOPY . .\nEXPOSE 3000\nCMD ["npm", "start"]\nEOF'
)
BACKEND_DOCKERFILE = (
    "cat > <BACKEND_PATH>/Dockerfile << EOF\nFROM python:3.11\nWORKDIR /app\nCOPY requirements.txt ./\n"
    'RUN pip install -r requirements.txt\nCOPY . .\nEXPOSE 8000\nCMD ["python", "app.py"]\nEOF'
)
COMPOSE_FILE = (
    "cat > docker-compose.yml << EOF\nversion: '3.8'\nservices:\n"
    '  backend:\n    build: ./backend\n    ports:\n      - "8000:8000"\n'
    "    environment:\n      - DATABASE_URL=postgresql://user:pass@db:5432/mydb\n    depends_on:\n      - db\n"
    '  frontend:\n    build: ./frontend\n    ports:\n      - "3000:3000"\n    depends_on:\n      - backend\n'
    "  db:\n    image: postgres:13\n    environment:\n      POSTGRES_USER: user\n      POSTGRES_PASSWORD: pass\n"
    "      POSTGRES_DB: mydb\n    volumes:\n      - postgres_data:/var/lib/postgresql/data\n"
    "volumes:\n  postgres_data:\nEOF"
)

DEFAULT_CATALOG = [
    WorkflowCategory(
        "containerization-docker",
        "CONTAINERIZATION WITH DOCKER",
        "Complete Docker workflow from installation to multi-container deployment",
        [
            WorkflowSection("docker-installation", "Installing Docker on Server",
                            "Set up Docker environment on your Linux server", [
                WorkflowCommand("install-docker", "Install Docker", "Installs Docker on your Linux server",
                                "sudo yum install docker -y", risk_level="medium"),
                WorkflowCommand("start-docker", "Start Docker service", "Starts Docker daemon",
                                "sudo systemctl start docker"),
                WorkflowCommand("enable-docker-boot", "Enable Docker on boot",
                                "Ensures Docker starts automatically on server boot", "sudo systemctl enable docker"),
                WorkflowCommand("add-user-docker-group", "Add user to Docker group", "Allows running Docker without sudo",
                                "sudo usermod -a -G docker <USER>",
                                [_text("USER", "Your server username", "ubuntu or ec2-user",
                                       validation=r"[a-z_][a-z0-9_-]*\$?", placeholder="username")]),
                WorkflowCommand("test-docker-installation", "Test Docker installation",
                                "Check version & test with hello-world container",
                                "docker --version && docker run hello-world"),
            ]),
            WorkflowSection("docker-basics", "Docker Images vs Containers",
                            "Understanding and managing Docker images and containers", [
                WorkflowCommand("list-images", "List Docker images",
                                "Shows downloaded images (blueprints for containers)", "docker images"),
                WorkflowCommand("list-running-containers", "List running containers",
                                "Shows currently running containers", "docker ps"),
                WorkflowCommand("list-all-containers", "List all containers",
                                "Shows all containers, including stopped ones", "docker ps -a"),
                WorkflowCommand("remove-container", "Remove container", "Delete a specific container",
                                "docker rm <CONTAINER_NAME>",
                                [_select("CONTAINER_NAME", "Name of container to remove", "my-app-container",
                                         _CONTAINERS)]),
            ]),
            WorkflowSection("dockerfile-creation", "Create Dockerfiles & .dockerignore",
                            "Set up Docker build configuration for your projects", [
                WorkflowCommand("create-frontend-dockerfile", "Create frontend Dockerfile",
                                "Creates Dockerfile for React/Node.js frontend", FRONTEND_DOCKERFILE,
                                [_text("FRONTEND_PATH", "Folder containing frontend code",
                                       "/home/ubuntu/myapp/frontend", validation=PATH_PATTERN)]),
                WorkflowCommand("create-backend-dockerfile", "Create backend Dockerfile",
                                "Creates Dockerfile for Python/Node.js backend", BACKEND_DOCKERFILE,
                                [_text("BACKEND_PATH", "Folder containing backend code",
                                       "/home/ubuntu/myapp/backend", validation=PATH_PATTERN)]),
                WorkflowCommand("create-frontend-dockerignore", "Create frontend .dockerignore",
                                "Excludes unnecessary files from Docker build",
                                "cat > <FRONTEND_PATH>/.dockerignore << EOF\nnode_modules\n.env\n.DS_Store\n*.log\nEOF",
                                [_text("FRONTEND_PATH", "Frontend project folder",
                                       "/home/ubuntu/myapp/frontend", validation=PATH_PATTERN)]),
                WorkflowCommand("build-frontend-image", "Build frontend image",
                                "Build Docker image for frontend project",
                                "docker build -t <FRONTEND_IMAGE> <FRONTEND_PATH>",
                                [_text("FRONTEND_IMAGE", "Name for the new Docker image", "myapp-frontend"),
                                 _text("FRONTEND_PATH", "Frontend project folder path",
                                       "/home/ubuntu/myapp/frontend", validation=PATH_PATTERN)],
                                risk_level="medium"),
            ]),
            WorkflowSection("docker-networking", "Running a Project with Docker",
                            "Deploy multi-container applications with networking", [
                WorkflowCommand("create-docker-network", "Create Docker network",
                                "Creates network for container communication", "docker network create <NETWORK_NAME>",
                                [_text("NETWORK_NAME", "Name for the new network", "myapp-network")]),
                WorkflowCommand("run-postgres-container", "Run PostgreSQL container",
                                "Start database container with network connection",
                                "docker run -d --name <DB_CONTAINER> --network <NETWORK_NAME> "
                                "-e POSTGRES_PASSWORD=<PASS> -e POSTGRES_USER=<USER> -p 5432:5432 postgres",
                                [_text("DB_CONTAINER", "Name for database container", "myapp-db"),
                                 _select("NETWORK_NAME", "Select existing network", "myapp-network", _NETWORKS),
                                 UserInput("PASS", "Password for PostgreSQL", placeholder="database-password",
                                           example="mySecurePassword123"),
                                 _text("USER", "Username for PostgreSQL", "myapp_user", placeholder="database-user")],
                                risk_level="medium"),
                WorkflowCommand("run-frontend-container", "Run frontend container",
                                "Start frontend container with port mapping",
                                "docker run -d --name <FRONTEND_CONTAINER> --network <NETWORK_NAME> "
                                "-p 3000:3000 <FRONTEND_IMAGE>",
                                [_text("FRONTEND_CONTAINER", "Name for frontend container", "myapp-frontend"),
                                 _select("NETWORK_NAME", "Select existing network", "myapp-network", _NETWORKS),
                                 _select("FRONTEND_IMAGE", "Select built frontend image", "myapp-frontend:latest",
                                         _IMAGES)]),
                WorkflowCommand("view-container-logs", "View container logs", "See real-time logs from container",
                                "docker logs -f <CONTAINER_NAME>",
                                [_select("CONTAINER_NAME", "Select container to view logs", "myapp-frontend",
                                         _RUNNING)]),
            ]),
            WorkflowSection("docker-compose", "Docker Compose - Multi-Container",
                            "Orchestrate multiple containers with docker-compose", [
                WorkflowCommand("install-docker-compose", "Install Docker Compose",
                                "Install Docker Compose for multi-container orchestration",
                                'sudo curl -L "https://github.com/docker/compose/releases/download/v2.20.2/'
                                'docker-compose-$(uname -s)-$(uname -m)" -o /usr/local/bin/docker-compose '
                                "&& sudo chmod +x /usr/local/bin/docker-compose",
                                risk_level="medium"),
                WorkflowCommand("create-docker-compose", "Create docker-compose.yml",
                                "Create configuration file for multiple services", COMPOSE_FILE),
                WorkflowCommand("start-compose-services", "Start all services",
                                "Launch all containers defined in docker-compose.yml", "docker-compose up -d"),
                WorkflowCommand("stop-compose-services", "Stop all services", "Stop and remove all containers",
                                "docker-compose down"),
                WorkflowCommand("view-compose-logs", "View service logs", "See logs from all services",
                                "docker-compose logs -f <SERVICE_NAME>",
                                [_text("SERVICE_NAME", "Service name from docker-compose.yml",
                                       "backend, frontend, db")]),
            ]),
        ],
    ),
    WorkflowCategory(
        "system-monitoring",
        "SYSTEM MONITORING & PERFORMANCE",
        "Monitor server health, performance, and resource usage",
        [
            WorkflowSection("basic-monitoring", "Basic System Information",
                            "Essential system metrics and information", [
                WorkflowCommand("system-info", "Show system info",
                                "Display system details including OS, kernel, and hardware",
                                "uname -a && cat /etc/os-release"),
                WorkflowCommand("disk-usage", "Check disk usage",
                                "Show disk space usage for all mounted filesystems", "df -h && du -sh /var/log"),
                WorkflowCommand("memory-usage", "Check memory usage", "Display RAM and swap usage", "free -h"),
                WorkflowCommand("cpu-info", "Show CPU information", "Display CPU details and current usage",
                                'lscpu && top -bn1 | grep "Cpu(s)"'),
            ]),
            WorkflowSection("process-monitoring", "Process Management", "Monitor and manage running processes", [
                WorkflowCommand("running-processes", "List running processes",
                                "Show all running processes with resource usage", "ps aux --sort=-%cpu | head -20"),
                WorkflowCommand("process-tree", "Show process tree", "Display processes in tree format", "pstree -p"),
                WorkflowCommand("kill-process", "Kill process", "Terminate a specific process", "kill -9 <PID>",
                                [_text("PID", "Process ID to terminate", "1234", validation=r"[0-9]+",
                                       placeholder="process-id")],
                                risk_level="high", requires_confirmation=True),
            ]),
        ],
    ),
    WorkflowCategory(
        "network-management",
        "NETWORK & CONNECTIVITY",
        "Network configuration, troubleshooting, and monitoring",
        [
            WorkflowSection("network-info", "Network Information", "Display network interfaces and connectivity", [
                WorkflowCommand("network-interfaces", "Show network interfaces",
                                "Display all network interfaces and their IP addresses", "ip addr show && ss -tuln"),
                WorkflowCommand("test-connectivity", "Test internet connectivity",
                                "Test connection to external servers",
                                "ping -c 4 8.8.8.8 && curl -I https://google.com"),
                WorkflowCommand("open-ports", "Show open ports", "List all listening ports and services",
                                "netstat -tulpn"),
            ]),
        ],
    ),
]


def parse_options(output: str, auto_detect: str) -> List[str]:
    """Turn auto-detect output into a de-duplicated option list."""
    lines = [line.strip() for line in (output or "").splitlines() if line.strip()]
    if '--format "table' in auto_detect and lines:
        lines = lines[1:]
    seen: List[str] = []
    for line in lines:
        if line not in seen and line != "<none>:<none>":
            seen.append(line)
    return seen


class WorkflowCatalog:
    def __init__(self, categories: Optional[List[WorkflowCategory]] = None):
        self._categories = list(DEFAULT_CATALOG if categories is None else categories)

    def categories(self) -> List[WorkflowCategory]:
        return list(self._categories)

    def category(self, category_id: str) -> WorkflowCategory:
        for category in self._categories:
            if category.id == category_id:
                return category
        raise NotFound(f"workflow category {category_id} not found")

    def section(self, category_id: str, section_id: str) -> WorkflowSection:
        for section in self.category(category_id).sections:
            if section.id == section_id:
                return section
        raise NotFound(f"workflow section {category_id}/{section_id} not found")

    def command(self, category_id: str, section_id: str, command_id: str) -> WorkflowCommand:
        for command in self.section(category_id, section_id).commands:
            if command.id == command_id:
                return command
        raise NotFound(f"workflow command {category_id}/{section_id}/{command_id} not found")

    def render(self, category_id: str, section_id: str, command_id: str,
               values: Optional[Dict[str, Any]] = None) -> Tuple[WorkflowCommand, str]:
        command = self.command(category_id, section_id, command_id)
        return command, command.render(values)
